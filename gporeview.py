from __future__ import annotations

import argparse
import csv
import getpass
import json
import os
import socket
import ssl
import sys
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

import dns.exception
import dns.resolver
from colorama import init, Fore, Style
from impacket.ldap.ldaptypes import (
    ACCESS_ALLOWED_ACE,
    ACCESS_ALLOWED_OBJECT_ACE,
    ACCESS_DENIED_ACE,
    ACCESS_DENIED_OBJECT_ACE,
    LDAP_SID,
    SR_SECURITY_DESCRIPTOR,
)
from impacket.uuid import bin_to_string
from ldap3 import ALL, BASE, KERBEROS, NTLM, SASL, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPException, LDAPSocketOpenError
from ldap3.protocol.microsoft import security_descriptor_control
from ldap3.utils.conv import escape_filter_chars

init(autoreset=True)


TOOL_NAME = "gporeview"

AUTHENTICATED_USERS = "Authenticated Users"
DOMAIN_COMPUTERS = "Domain Computers"

# Extended right "Apply Group Policy"
APPLY_GROUP_POLICY = "edacfd8f-ffb3-11d1-b41d-00a0c968f939"

OWNER_SECURITY_INFORMATION = 0x01
DACL_SECURITY_INFORMATION = 0x04

INHERIT_ONLY_ACE = 0x08
INHERITED_ACE = 0x10

DS_CREATE_CHILD = 0x00000001
DS_DELETE_CHILD = 0x00000002
DS_LIST_CHILDREN = 0x00000004
DS_SELF = 0x00000008
DS_READ_PROP = 0x00000010
DS_WRITE_PROP = 0x00000020
DS_DELETE_TREE = 0x00000040
DS_LIST_OBJECT = 0x00000080
DS_CONTROL_ACCESS = 0x00000100
DELETE = 0x00010000
READ_CONTROL = 0x00020000
WRITE_DAC = 0x00040000
WRITE_OWNER = 0x00080000
GENERIC_ALL = 0x10000000
GENERIC_EXECUTE = 0x20000000
GENERIC_WRITE = 0x40000000
GENERIC_READ = 0x80000000

READ_RIGHTS = READ_CONTROL | DS_LIST_CHILDREN | DS_READ_PROP | DS_LIST_OBJECT
EDIT_RIGHTS = READ_RIGHTS | DS_CREATE_CHILD | DS_DELETE_CHILD | DS_WRITE_PROP
EDIT_DELETE_MODIFY_SECURITY_RIGHTS = EDIT_RIGHTS | DELETE | WRITE_DAC | WRITE_OWNER
FULL_CONTROL_RIGHTS = 0x000F01FF

WELL_KNOWN_SIDS = {
    "S-1-1-0": "Everyone",
    "S-1-3-0": "CREATOR OWNER",
    "S-1-5-9": "NT AUTHORITY\\ENTERPRISE DOMAIN CONTROLLERS",
    "S-1-5-11": "NT AUTHORITY\\Authenticated Users",
    "S-1-5-18": "NT AUTHORITY\\SYSTEM",
    "S-1-5-32-544": "BUILTIN\\Administrators",
}

WELL_KNOWN_TRUSTEES = {
    "everyone": "S-1-1-0",
    "enterprise domain controllers": "S-1-5-9",
    "authenticated users": "S-1-5-11",
    "system": "S-1-5-18",
}

DOMAIN_TRUSTEE_RIDS = {
    "domain admins": 512,
    "domain users": 513,
    "domain computers": 515,
    "domain controllers": 516,
    "group policy creator owners": 520,
}

TRUSTEE_OBJECT_CLASSES = {
    "group": "group",
    "user": "user",
    "computer": "computer",
}

_PAGE_SIZE = 500
_PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
_RESULT_REFERRAL = 10
_RESULT_NO_SUCH_OBJECT = 32


class GpoReviewError(Exception):
    pass


class DomainNotFound(GpoReviewError):
    pass


class DirectoryQueryError(GpoReviewError):
    pass


class PermissionNotFound(GpoReviewError):
    def __init__(self, gpo_id: str, trustee: str):
        super().__init__(f"{trustee} has no permission entry on GPO {gpo_id}")
        self.gpo_id = gpo_id
        self.trustee = trustee


class ReportMode(Enum):
    ALL = "all"
    USER_ONLY = "user"
    COMPUTER_ONLY = "computer"


class PermissionLevel(Enum):
    NONE = "None"
    READ = "GpoRead"
    APPLY = "GpoApply"
    EDIT = "GpoEdit"
    EDIT_DELETE_MODIFY_SECURITY = "GpoEditDeleteModifySecurity"
    CUSTOM = "GpoCustom"


@dataclass(frozen=True)
class DomainHandle:
    name: str
    base_dn: str
    domain_sid: str
    netbios_name: str
    dc_host: Optional[str] = None
    connection: Any = field(default=None, compare=False, repr=False)

    @property
    def policies_dn(self) -> str:
        return f"CN=Policies,CN=System,{self.base_dn}"

    def gpo_dn(self, gpo_id: str) -> str:
        return f"CN={gpo_id},{self.policies_dn}"


@dataclass(frozen=True)
class GpoRecord:
    gpo_id: str
    display_name: str
    owner: Optional[str] = None
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    user_version: int = 0
    computer_version: int = 0

    @property
    def has_user_settings(self) -> bool:
        return self.user_version > 0

    @property
    def has_computer_settings(self) -> bool:
        return self.computer_version > 0


@dataclass(frozen=True)
class AccessEntry:
    sid: str
    allowed: bool
    mask: int
    object_type: Optional[str] = None
    inherited: bool = False
    inherit_only: bool = False


@dataclass(frozen=True)
class PermissionEntry:
    trustee: str
    trustee_sid: str
    level: PermissionLevel
    trustee_type: str = "Group"


@dataclass(frozen=True)
class ReviewResult:
    display_name: str
    owner: Optional[str]
    has_user_settings: bool
    has_computer_settings: bool
    has_authenticated_users: bool
    has_authenticated_users_with_perm: bool
    has_domain_computers: bool
    has_domain_computers_with_perm: bool
    require_review: bool
    created: Optional[datetime]
    modified: Optional[datetime]
    gpo_id: Optional[str] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _domain_to_base_dn(domain: str) -> str:
    return ",".join(f"DC={part}" for part in domain.split("."))


def _split_version(version_number: int) -> tuple[int, int]:
    # versionNumber: high word is the user version, low word the computer version
    return (version_number >> 16) & 0xFFFF, version_number & 0xFFFF


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _first(attributes: dict[str, Any], name: str) -> Any:
    value = attributes.get(name)
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _expand_generic_rights(mask: int) -> int:
    expanded = mask & ~(GENERIC_ALL | GENERIC_EXECUTE | GENERIC_WRITE | GENERIC_READ)
    if mask & GENERIC_ALL:
        expanded |= FULL_CONTROL_RIGHTS
    if mask & GENERIC_READ:
        expanded |= READ_RIGHTS
    if mask & GENERIC_WRITE:
        expanded |= READ_CONTROL | DS_SELF | DS_WRITE_PROP
    if mask & GENERIC_EXECUTE:
        expanded |= READ_CONTROL | DS_LIST_CHILDREN
    return expanded


def _has_rights(mask: int, rights: int) -> bool:
    return mask & rights == rights


def access_entries(descriptor: bytes) -> list[AccessEntry]:
    sd = SR_SECURITY_DESCRIPTOR(data=descriptor)
    if sd["OffsetDacl"] == 0:
        return []

    entries: list[AccessEntry] = []
    for ace in sd["Dacl"].aces:
        ace_type = ace["AceType"]
        body = ace["Ace"]
        object_type = None
        if ace_type in (ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE, ACCESS_DENIED_OBJECT_ACE.ACE_TYPE):
            if body.hasFlag(ACCESS_ALLOWED_OBJECT_ACE.ACE_OBJECT_TYPE_PRESENT):
                object_type = bin_to_string(body["ObjectType"]).lower()
        elif ace_type not in (ACCESS_ALLOWED_ACE.ACE_TYPE, ACCESS_DENIED_ACE.ACE_TYPE):
            continue

        entries.append(
            AccessEntry(
                sid=body["Sid"].formatCanonical(),
                allowed=ace_type in (ACCESS_ALLOWED_ACE.ACE_TYPE, ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE),
                mask=body["Mask"]["Mask"],
                object_type=object_type,
                inherited=bool(ace["AceFlags"] & INHERITED_ACE),
                inherit_only=bool(ace["AceFlags"] & INHERIT_ONLY_ACE),
            )
        )
    return entries


def descriptor_owner(descriptor: bytes) -> Optional[str]:
    sd = SR_SECURITY_DESCRIPTOR(data=descriptor)
    if sd["OffsetOwner"] == 0:
        return None
    return sd["OwnerSid"].formatCanonical()


def permission_level(entries: Iterable[AccessEntry]) -> PermissionLevel:
    rights = 0
    can_apply = False
    custom = False

    for entry in entries:
        if entry.inherit_only:
            continue
        if not entry.allowed:
            custom = True
            continue

        mask = _expand_generic_rights(entry.mask)
        if entry.object_type is None:
            rights |= mask
            if mask & DS_CONTROL_ACCESS:
                can_apply = True
        elif entry.object_type == APPLY_GROUP_POLICY and mask & DS_CONTROL_ACCESS:
            can_apply = True
        else:
            custom = True

    if custom:
        return PermissionLevel.CUSTOM
    if _has_rights(rights, EDIT_DELETE_MODIFY_SECURITY_RIGHTS):
        return PermissionLevel.EDIT_DELETE_MODIFY_SECURITY
    if _has_rights(rights, EDIT_RIGHTS):
        return PermissionLevel.EDIT
    if rights == 0 and not can_apply:
        return PermissionLevel.NONE
    if rights & ~(READ_RIGHTS | DS_CONTROL_ACCESS) or not _has_rights(rights, READ_RIGHTS):
        return PermissionLevel.CUSTOM
    return PermissionLevel.APPLY if can_apply else PermissionLevel.READ


def _grants_read_or_apply(entry: Optional[PermissionEntry]) -> bool:
    return entry is not None and entry.level in (PermissionLevel.READ, PermissionLevel.APPLY)


def requires_review(authenticated_users_with_perm: bool, domain_computers_with_perm: bool) -> bool:
    if authenticated_users_with_perm:
        return False
    return not domain_computers_with_perm


def review_gpo(
    gpo: GpoRecord,
    authenticated_users: Optional[PermissionEntry],
    domain_computers: Optional[PermissionEntry],
    mode: ReportMode = ReportMode.ALL,
) -> Optional[ReviewResult]:
    has_user = gpo.has_user_settings
    has_computer = gpo.has_computer_settings

    if mode is ReportMode.USER_ONLY:
        if not has_user or has_computer:
            return None
        has_user, has_computer = True, False
    elif mode is ReportMode.COMPUTER_ONLY:
        if not has_computer or has_user:
            return None
        has_user, has_computer = False, True

    au_with_perm = _grants_read_or_apply(authenticated_users)
    dc_with_perm = _grants_read_or_apply(domain_computers)
    return ReviewResult(
        display_name=gpo.display_name,
        owner=gpo.owner,
        has_user_settings=has_user,
        has_computer_settings=has_computer,
        has_authenticated_users=authenticated_users is not None,
        has_authenticated_users_with_perm=au_with_perm,
        has_domain_computers=domain_computers is not None,
        has_domain_computers_with_perm=dc_with_perm,
        require_review=requires_review(au_with_perm, dc_with_perm),
        created=gpo.created,
        modified=gpo.modified,
        gpo_id=gpo.gpo_id,
    )


class GpoReviewReporter:
    def __init__(self, directory, progress: Optional[Callable[[int, int], None]] = None):
        self.directory = directory
        self.progress = progress

    def _lookup(self, gpo: GpoRecord, trustee: str, domain: DomainHandle) -> Optional[PermissionEntry]:
        try:
            return self.directory.get_permission(gpo.gpo_id, trustee, "Group", domain)
        except PermissionNotFound:
            return None

    def run(self, domain: DomainHandle, mode: ReportMode = ReportMode.ALL) -> Iterator[ReviewResult]:
        gpos = list(self.directory.list_gpos(domain))
        total = len(gpos)
        for index, gpo in enumerate(gpos, start=1):
            authenticated_users = self._lookup(gpo, AUTHENTICATED_USERS, domain)
            domain_computers = self._lookup(gpo, DOMAIN_COMPUTERS, domain)
            result = review_gpo(gpo, authenticated_users, domain_computers, mode)
            if self.progress is not None:
                self.progress(index, total)
            if result is not None:
                yield result


def _current_domain_name() -> Optional[str]:
    name = os.environ.get("USERDNSDOMAIN")
    if not name:
        fqdn = socket.getfqdn()
        name = fqdn.split(".", 1)[1] if "." in fqdn else None
    if not name or "." not in name:
        return None
    return name.lower()


class LdapGpoDirectory:
    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        dc_host: Optional[str] = None,
        use_ldaps: bool = False,
        kerberos: bool = False,
        timeout: int = 10,
    ):
        self.username = username
        self.password = password
        self.dc_host = dc_host
        self.use_ldaps = use_ldaps
        self.kerberos = kerberos
        self.timeout = timeout
        self._account_names: dict[str, str] = {}

    def _locate_dc(self, name: str) -> str:
        if self.dc_host:
            return self.dc_host
        try:
            answers = dns.resolver.resolve(f"_ldap._tcp.dc._msdcs.{name}", "SRV", lifetime=self.timeout)
        except dns.exception.DNSException as exc:
            raise DomainNotFound(f"Domain {name} could not be resolved: {exc}") from exc
        records = sorted(answers, key=lambda r: (r.priority, -r.weight))
        if not records:
            raise DomainNotFound(f"No domain controller advertised for {name}")
        return records[0].target.to_text().rstrip(".")

    def _connect(self, name: str, host: str) -> Connection:
        if self.use_ldaps:
            server = Server(host, port=636, use_ssl=True, tls=Tls(validate=ssl.CERT_NONE), get_info=ALL,
                            connect_timeout=self.timeout)
        else:
            server = Server(host, get_info=ALL, connect_timeout=self.timeout)

        if self.kerberos:
            options = {"authentication": SASL, "sasl_mechanism": KERBEROS}
        elif self.username:
            user = self.username if ("\\" in self.username or "@" in self.username) else f"{name}\\{self.username}"
            options = {"user": user, "password": self.password, "authentication": NTLM}
        else:
            options = {}

        try:
            return Connection(server, auto_bind=True, receive_timeout=self.timeout, **options)
        except LDAPSocketOpenError as exc:
            raise DomainNotFound(f"Domain controller {host} for {name} is unreachable: {exc}") from exc
        except LDAPBindError as exc:
            raise DirectoryQueryError(f"Bind to {host} failed: {exc}") from exc
        except LDAPException as exc:
            raise DirectoryQueryError(f"LDAP error while connecting to {host}: {exc}") from exc

    def resolve_domain(self, name: Optional[str] = None) -> DomainHandle:
        if not name:
            name = _current_domain_name()
            if not name:
                raise DomainNotFound("Unable to determine the current domain; pass --domain")
        name = name.strip().rstrip(".").lower()

        host = self._locate_dc(name)
        connection = self._connect(name, host)
        return self.describe_domain(connection, name, host)

    def describe_domain(self, connection, name: str, host: Optional[str] = None) -> DomainHandle:
        base_dn = _domain_to_base_dn(name)
        try:
            connection.search(base_dn, "(objectClass=domain)", search_scope=BASE, attributes=["objectSid"])
        except LDAPException as exc:
            raise DirectoryQueryError(f"Reading {base_dn} failed: {exc}") from exc

        result = connection.result or {}
        if result.get("result") in (_RESULT_REFERRAL, _RESULT_NO_SUCH_OBJECT):
            raise DomainNotFound(f"Domain {name} is not served by {host or 'the domain controller'}")
        _check_result(connection, f"Reading {base_dn}")

        entries = [e for e in connection.response or [] if e.get("type") == "searchResEntry"]
        if not entries:
            raise DomainNotFound(f"Domain {name} is not served by {host or 'the domain controller'}")
        raw_sid = _first(entries[0].get("raw_attributes", {}), "objectSid")
        if not raw_sid:
            raise DirectoryQueryError(f"{base_dn} has no objectSid")
        domain_sid = LDAP_SID(data=raw_sid).formatCanonical()

        return DomainHandle(
            name=name,
            base_dn=base_dn,
            domain_sid=domain_sid,
            netbios_name=self._netbios_name(connection, name, base_dn),
            dc_host=host,
            connection=connection,
        )

    def _netbios_name(self, connection, name: str, base_dn: str) -> str:
        fallback = name.split(".", 1)[0].upper()
        info = getattr(getattr(connection, "server", None), "info", None)
        contexts = getattr(info, "other", {}).get("configurationNamingContext") if info else None
        if not contexts:
            return fallback

        config_nc = contexts[0] if isinstance(contexts, (list, tuple)) else contexts
        try:
            connection.search(
                f"CN=Partitions,{config_nc}",
                f"(&(objectClass=crossRef)(nCName={escape_filter_chars(base_dn)}))",
                search_scope=SUBTREE,
                attributes=["nETBIOSName"],
            )
        except LDAPException:
            return fallback
        for entry in connection.response or []:
            if entry.get("type") != "searchResEntry":
                continue
            netbios = _first(entry.get("attributes", {}), "nETBIOSName")
            if netbios:
                return str(netbios)
        return fallback

    def _search(self, domain: DomainHandle, what: str, **kwargs) -> list[dict[str, Any]]:
        connection = domain.connection
        try:
            connection.search(**kwargs)
        except LDAPException as exc:
            raise DirectoryQueryError(f"{what} failed: {exc}") from exc
        _check_result(connection, what)
        return [e for e in connection.response or [] if e.get("type") == "searchResEntry"]

    def _paged_search(self, domain: DomainHandle, what: str, **kwargs) -> Iterator[dict[str, Any]]:
        cookie = None
        while True:
            page = dict(kwargs)
            if page.get("controls"):
                page["controls"] = list(page["controls"])
            entries = self._search(domain, what, paged_size=_PAGE_SIZE, paged_cookie=cookie, **page)
            controls = domain.connection.result.get("controls") or {}
            cookie = controls.get(_PAGED_RESULTS_OID, {}).get("value", {}).get("cookie")
            yield from entries
            if not cookie:
                break

    def account_name(self, domain: DomainHandle, sid: str) -> str:
        if sid in WELL_KNOWN_SIDS:
            return WELL_KNOWN_SIDS[sid]
        if sid in self._account_names:
            return self._account_names[sid]

        name = sid
        entries = self._search(
            domain,
            f"Resolving {sid}",
            search_base=domain.base_dn,
            search_filter=f"(objectSid={sid})",
            search_scope=SUBTREE,
            attributes=["sAMAccountName"],
        )
        if entries:
            account = _first(entries[0].get("attributes", {}), "sAMAccountName")
            if account:
                name = f"{domain.netbios_name}\\{account}"
        self._account_names[sid] = name
        return name

    def list_gpos(self, domain: DomainHandle) -> list[GpoRecord]:
        gpos: list[GpoRecord] = []
        entries = self._paged_search(
            domain,
            "Enumerating GPOs",
            search_base=domain.policies_dn,
            search_filter="(objectClass=groupPolicyContainer)",
            search_scope=SUBTREE,
            attributes=["name", "displayName", "whenCreated", "whenChanged", "versionNumber", "nTSecurityDescriptor"],
            controls=security_descriptor_control(sdflags=OWNER_SECURITY_INFORMATION),
        )
        for entry in entries:
            attributes = entry.get("attributes", {})
            gpo_id = str(_first(attributes, "name") or "")
            if not gpo_id:
                continue

            owner = None
            descriptor = _first(entry.get("raw_attributes", {}), "nTSecurityDescriptor")
            if descriptor:
                owner_sid = descriptor_owner(descriptor)
                owner = self.account_name(domain, owner_sid) if owner_sid else None

            user_version, computer_version = _split_version(int(_first(attributes, "versionNumber") or 0))
            gpos.append(
                GpoRecord(
                    gpo_id=gpo_id,
                    display_name=str(_first(attributes, "displayName") or gpo_id),
                    owner=owner,
                    created=_as_datetime(_first(attributes, "whenCreated")),
                    modified=_as_datetime(_first(attributes, "whenChanged")),
                    user_version=user_version,
                    computer_version=computer_version,
                )
            )
        return gpos

    def trustee_sid(self, domain: DomainHandle, trustee: str, trustee_type: str = "Group") -> str:
        key = trustee.strip().lower()
        if key in WELL_KNOWN_TRUSTEES:
            return WELL_KNOWN_TRUSTEES[key]
        if key in DOMAIN_TRUSTEE_RIDS:
            return f"{domain.domain_sid}-{DOMAIN_TRUSTEE_RIDS[key]}"

        object_class = TRUSTEE_OBJECT_CLASSES.get(trustee_type.lower())
        if object_class is None:
            raise ValueError(f"Unsupported trustee type: {trustee_type}")

        account = trustee.split("\\", 1)[-1]
        entries = self._search(
            domain,
            f"Resolving trustee {trustee}",
            search_base=domain.base_dn,
            search_filter=f"(&(objectClass={object_class})(sAMAccountName={escape_filter_chars(account)}))",
            search_scope=SUBTREE,
            attributes=["objectSid"],
        )
        raw_sid = _first(entries[0].get("raw_attributes", {}), "objectSid") if entries else None
        if not raw_sid:
            raise DirectoryQueryError(f"Trustee {trustee} ({trustee_type}) was not found in {domain.name}")
        return LDAP_SID(data=raw_sid).formatCanonical()

    def get_permission(self, gpo_id: str, trustee: str, trustee_type: str, domain: DomainHandle) -> PermissionEntry:
        sid = self.trustee_sid(domain, trustee, trustee_type)
        entries = self._search(
            domain,
            f"Reading permissions of GPO {gpo_id}",
            search_base=domain.gpo_dn(gpo_id),
            search_filter="(objectClass=groupPolicyContainer)",
            search_scope=BASE,
            attributes=["nTSecurityDescriptor"],
            controls=security_descriptor_control(sdflags=DACL_SECURITY_INFORMATION),
        )
        descriptor = _first(entries[0].get("raw_attributes", {}), "nTSecurityDescriptor") if entries else None
        if not descriptor:
            raise DirectoryQueryError(f"GPO {gpo_id} has no readable security descriptor")

        matching = [
            e for e in access_entries(descriptor)
            if e.sid == sid and not e.inherited and not e.inherit_only
        ]
        if not matching:
            raise PermissionNotFound(gpo_id, trustee)

        return PermissionEntry(
            trustee=trustee,
            trustee_sid=sid,
            level=permission_level(matching),
            trustee_type=trustee_type,
        )


def _check_result(connection, what: str) -> None:
    result = connection.result or {}
    code = result.get("result", 0)
    if code != 0:
        description = result.get("description") or "error"
        message = result.get("message") or ""
        raise DirectoryQueryError(f"{what} failed: {description} ({code}) {message}".strip())


def _record_dict(result: ReviewResult) -> dict[str, Any]:
    record = asdict(result)
    for key in ("created", "modified"):
        if record[key] is not None:
            record[key] = record[key].isoformat()
    return record


RECORD_FIELDS = [f.name for f in fields(ReviewResult)]

_TABLE_COLUMNS: list[tuple[str, int, Callable[[ReviewResult], Any]]] = [
    ("Name", 32, lambda r: r.display_name),
    ("Owner", 28, lambda r: r.owner or ""),
    ("User", 5, lambda r: r.has_user_settings),
    ("Comp", 5, lambda r: r.has_computer_settings),
    ("AU", 5, lambda r: r.has_authenticated_users),
    ("AUPerm", 6, lambda r: r.has_authenticated_users_with_perm),
    ("DC", 5, lambda r: r.has_domain_computers),
    ("DCPerm", 6, lambda r: r.has_domain_computers_with_perm),
    ("Review", 6, lambda r: r.require_review),
    ("Modified", 19, lambda r: r.modified.strftime("%Y-%m-%d %H:%M:%S") if r.modified else ""),
]


def _cell(value: Any, width: int) -> str:
    if isinstance(value, bool):
        value = "yes" if value else "no"
    text = str(value)
    if len(text) > width:
        text = text[: width - 1] + "~"
    return text.ljust(width)


def _table_writer(stream) -> Callable[[ReviewResult], None]:
    header = " ".join(_cell(name, width) for name, width, _ in _TABLE_COLUMNS)
    print(f"{Style.BRIGHT}{header}", file=stream)
    print("-" * len(header), file=stream)

    def write(result: ReviewResult) -> None:
        row = " ".join(_cell(getter(result), width) for _, width, getter in _TABLE_COLUMNS)
        color = Fore.RED if result.require_review else ""
        print(f"{color}{row}", file=stream)

    return write


def _csv_writer(stream) -> Callable[[ReviewResult], None]:
    writer = csv.DictWriter(stream, fieldnames=RECORD_FIELDS)
    writer.writeheader()

    def write(result: ReviewResult) -> None:
        writer.writerow(_record_dict(result))

    return write


def _json_writer(stream) -> Callable[[ReviewResult], None]:
    def write(result: ReviewResult) -> None:
        print(json.dumps(_record_dict(result)), file=stream)

    return write


STREAM_WRITERS = {
    "table": _table_writer,
    "csv": _csv_writer,
    "json": _json_writer,
}


def export_csv(results: list[ReviewResult], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", newline="", encoding="utf-8") as f:
        write = _csv_writer(f)
        for result in results:
            write(result)


def export_json(results: list[ReviewResult], output_path: Path, domain: DomainHandle, mode: ReportMode) -> None:
    payload = {
        "generated_at": _utc_now_iso(),
        "tool": TOOL_NAME,
        "domain": domain.name,
        "mode": mode.value,
        "summary": {
            "total": len(results),
            "require_review": sum(1 for r in results if r.require_review),
        },
        "results": [_record_dict(r) for r in results],
    }
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def print_banner(domain: DomainHandle, mode: ReportMode) -> None:
    print(f"\n{Fore.CYAN}{'='*60}", file=sys.stderr)
    print(f"{Fore.CYAN} REVIEWING GPOs IN: {Fore.WHITE}{Style.BRIGHT}{domain.name}", file=sys.stderr)
    print(f"{Fore.CYAN} DC: {domain.dc_host or '-'}  Mode: {mode.value}", file=sys.stderr)
    print(f"{Fore.CYAN}{'='*60}", file=sys.stderr)


def print_progress(done: int, total: int) -> None:
    if total <= 0:
        return
    percent = done * 100 // total
    previous = (done - 1) * 100 // total
    if done == 1 or done == total or percent // 10 != previous // 10:
        print(f"{Fore.CYAN}[*] Processed {done}/{total} GPOs ({percent}%)", file=sys.stderr)


def print_summary(results: list[ReviewResult]) -> None:
    flagged = sum(1 for r in results if r.require_review)
    color = Fore.RED if flagged else Fore.GREEN
    print(f"\n{Style.BRIGHT}[Summary] MS16-072 review:", file=sys.stderr)
    print(f"  GPOs reported:  {len(results)}", file=sys.stderr)
    print(f"  {color}Require review{Style.RESET_ALL}: {flagged}", file=sys.stderr)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description=(
            "GPO MS16-072 Permission Reviewer\n\n"
            "Lists every Group Policy Object of a domain and flags the ones where neither "
            "'Authenticated Users' nor 'Domain Computers' holds Read or Apply permission."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "What this tool does:\n"
            "  - Locates a domain controller (DNS SRV) and binds over LDAP/LDAPS.\n"
            "  - Enumerates groupPolicyContainer objects (name, owner, dates, versions).\n"
            "  - Reads the permission level of 'Authenticated Users' and 'Domain Computers'.\n"
            "  - Marks GPOs requiring review when neither principal has GpoRead/GpoApply.\n"
            "  - Never modifies a GPO.\n\n"
            "Examples:\n"
            "  gporeview -d corp.example.com -u auditor\n"
            "  gporeview -d corp.example.com -u auditor --computer-configuration-only --format csv > gpos.csv\n"
            "  gporeview -k --json-out review.json\n"
        ),
    )
    parser.add_argument("-d", "--domain", help="Domain DNS name (default: current domain)")
    parser.add_argument("--dc-host", help="Domain controller to query (default: DNS SRV lookup)")
    parser.add_argument("-u", "--username", default=os.environ.get("GPOREVIEW_USERNAME"),
                        help="Username for NTLM bind (env GPOREVIEW_USERNAME)")
    parser.add_argument("-p", "--password", default=os.environ.get("GPOREVIEW_PASSWORD"),
                        help="Password for NTLM bind (env GPOREVIEW_PASSWORD, prompted when missing)")
    parser.add_argument("-k", "--kerberos", action="store_true", help="Bind with Kerberos (SASL GSSAPI)")
    parser.add_argument("--ldaps", action="store_true", help="Use LDAPS on port 636")
    parser.add_argument("--timeout", type=int, default=10, help="Network timeout in seconds")

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--all", dest="mode", action="store_const", const=ReportMode.ALL,
                       help="Report every GPO (default)")
    modes.add_argument("--user-configuration-only", dest="mode", action="store_const",
                       const=ReportMode.USER_ONLY, help="Report GPOs with user settings only")
    modes.add_argument("--computer-configuration-only", dest="mode", action="store_const",
                       const=ReportMode.COMPUTER_ONLY, help="Report GPOs with computer settings only")
    parser.set_defaults(mode=ReportMode.ALL)

    parser.add_argument("--format", choices=sorted(STREAM_WRITERS), default="table",
                        help="Format of the records written to stdout")
    parser.add_argument("--csv-out", help="Write results to CSV")
    parser.add_argument("--json-out", help="Write results to JSON")
    parser.add_argument("--no-progress", action="store_true", help="Do not report progress on stderr")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    password = args.password
    if args.username and password is None and not args.kerberos:
        password = getpass.getpass(f"Password for {args.username}: ")

    directory = LdapGpoDirectory(
        username=args.username,
        password=password,
        dc_host=args.dc_host,
        use_ldaps=args.ldaps,
        kerberos=args.kerberos,
        timeout=args.timeout,
    )
    reporter = GpoReviewReporter(directory, progress=None if args.no_progress else print_progress)

    results: list[ReviewResult] = []
    try:
        domain = directory.resolve_domain(args.domain)
        print_banner(domain, args.mode)
        write = STREAM_WRITERS[args.format](sys.stdout)
        for result in reporter.run(domain, args.mode):
            write(result)
            results.append(result)
    except GpoReviewError as exc:
        print(f"{Fore.RED}[!] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"{Fore.RED}[!] Interrupted", file=sys.stderr)
        return 130

    print_summary(results)

    status = 0
    if args.csv_out:
        try:
            export_csv(results, Path(args.csv_out))
            print(f"{Fore.GREEN}[+] Wrote CSV: {args.csv_out}", file=sys.stderr)
        except OSError as exc:
            print(f"{Fore.RED}[!] CSV export error: {exc}", file=sys.stderr)
            status = 1

    if args.json_out:
        try:
            export_json(results, Path(args.json_out), domain, args.mode)
            print(f"{Fore.GREEN}[+] Wrote JSON: {args.json_out}", file=sys.stderr)
        except OSError as exc:
            print(f"{Fore.RED}[!] JSON export error: {exc}", file=sys.stderr)
            status = 1

    return status


if __name__ == "__main__":
    raise SystemExit(main())
