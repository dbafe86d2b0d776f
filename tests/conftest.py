from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest
from impacket.ldap import ldaptypes
from impacket.uuid import string_to_bin

from gporeview import DomainHandle, GpoRecord, PermissionEntry, PermissionLevel, PermissionNotFound

DOMAIN_SID = "S-1-5-21-1111111111-2222222222-3333333333"
AUTHENTICATED_USERS_SID = "S-1-5-11"
DOMAIN_COMPUTERS_SID = f"{DOMAIN_SID}-515"
DOMAIN_ADMINS_SID = f"{DOMAIN_SID}-512"


def sid_bytes(sid: str) -> bytes:
    value = ldaptypes.LDAP_SID()
    value.fromCanonical(sid)
    return value.getData()


def build_ace(sid: str, mask: int, allowed: bool = True, object_type: Optional[str] = None, flags: int = 0):
    ace = ldaptypes.ACE()
    if object_type:
        if allowed:
            ace["AceType"] = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE
            body = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE()
        else:
            ace["AceType"] = ldaptypes.ACCESS_DENIED_OBJECT_ACE.ACE_TYPE
            body = ldaptypes.ACCESS_DENIED_OBJECT_ACE()
        body["Flags"] = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_OBJECT_TYPE_PRESENT
        body["ObjectType"] = string_to_bin(object_type)
        body["InheritedObjectType"] = b""
    else:
        if allowed:
            ace["AceType"] = ldaptypes.ACCESS_ALLOWED_ACE.ACE_TYPE
            body = ldaptypes.ACCESS_ALLOWED_ACE()
        else:
            ace["AceType"] = ldaptypes.ACCESS_DENIED_ACE.ACE_TYPE
            body = ldaptypes.ACCESS_DENIED_ACE()
    body["Mask"] = ldaptypes.ACCESS_MASK()
    body["Mask"]["Mask"] = mask
    body["Sid"] = ldaptypes.LDAP_SID()
    body["Sid"].fromCanonical(sid)
    ace["AceFlags"] = flags
    ace["Ace"] = body
    return ace


def build_descriptor(aces=None, owner: Optional[str] = DOMAIN_ADMINS_SID) -> bytes:
    sd = ldaptypes.SR_SECURITY_DESCRIPTOR()
    sd["Revision"] = b"\x01"
    sd["Sbz1"] = b"\x00"
    sd["Control"] = 32772
    if owner:
        sd["OwnerSid"] = ldaptypes.LDAP_SID()
        sd["OwnerSid"].fromCanonical(owner)
    else:
        sd["OwnerSid"] = b""
    sd["GroupSid"] = b""
    sd["Sacl"] = b""
    if aces is None:
        sd["Dacl"] = b""
    else:
        acl = ldaptypes.ACL()
        acl["AclRevision"] = 4
        acl["Sbz1"] = 0
        acl["Sbz2"] = 0
        acl.aces = list(aces)
        sd["Dacl"] = acl
    return sd.getData()


def search_entry(dn: str, attributes=None, raw_attributes=None) -> dict:
    return {
        "type": "searchResEntry",
        "dn": dn,
        "attributes": dict(attributes or {}),
        "raw_attributes": dict(raw_attributes or {}),
    }


class FakeConnection:
    """Stands in for a bound ldap3 connection.

    ``handler`` receives the keyword arguments of each search and returns a
    ``(result, response)`` pair, where ``result`` is an ldap3 style result
    dict (or None for success) and ``response`` the list of entries.
    """

    def __init__(self, handler, server=None):
        self.handler = handler
        self.server = server
        self.searches: list[dict] = []
        self.result: dict = {}
        self.response: list = []

    def search(self, search_base=None, search_filter=None, **kwargs):
        kwargs.update(search_base=search_base, search_filter=search_filter)
        self.searches.append(kwargs)
        result, response = self.handler(kwargs)
        self.result = result or {"result": 0, "description": "success", "message": ""}
        self.response = list(response)
        return self.result["result"] == 0


class FakeDirectory:
    def __init__(self, gpos, permissions=None, failures=None):
        self.gpos = list(gpos)
        self.permissions = dict(permissions or {})
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, str, str]] = []

    def list_gpos(self, domain):
        return list(self.gpos)

    def get_permission(self, gpo_id, trustee, trustee_type, domain):
        self.calls.append((gpo_id, trustee, trustee_type))
        if (gpo_id, trustee) in self.failures:
            raise self.failures[(gpo_id, trustee)]
        level = self.permissions.get((gpo_id, trustee))
        if level is None:
            raise PermissionNotFound(gpo_id, trustee)
        return PermissionEntry(trustee=trustee, trustee_sid="S-1-5-11", level=level)


def make_gpo(
    name: str,
    user_version: int = 0,
    computer_version: int = 0,
    gpo_id: Optional[str] = None,
) -> GpoRecord:
    return GpoRecord(
        gpo_id=gpo_id or "{%s}" % name.upper().replace(" ", "-"),
        display_name=name,
        owner="CORP\\Domain Admins",
        created=datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        modified=datetime(2024, 6, 7, 8, 9, 10, tzinfo=timezone.utc),
        user_version=user_version,
        computer_version=computer_version,
    )


@pytest.fixture
def domain() -> DomainHandle:
    return DomainHandle(
        name="corp.example.com",
        base_dn="DC=corp,DC=example,DC=com",
        domain_sid=DOMAIN_SID,
        netbios_name="CORP",
        dc_host="dc01.corp.example.com",
    )


@pytest.fixture
def sample_directory() -> FakeDirectory:
    gpos = [
        make_gpo("Default Domain Policy", user_version=2, computer_version=1, gpo_id="{31B2F340-016D-11D2-945F-00C04FB984F9}"),
        make_gpo("Locked GPO", user_version=1, computer_version=0),
        make_gpo("Hardened Computers", user_version=0, computer_version=4),
        make_gpo("Empty GPO"),
    ]
    permissions = {
        ("{31B2F340-016D-11D2-945F-00C04FB984F9}", "Authenticated Users"): PermissionLevel.APPLY,
        ("{HARDENED-COMPUTERS}", "Authenticated Users"): PermissionLevel.EDIT,
        ("{HARDENED-COMPUTERS}", "Domain Computers"): PermissionLevel.READ,
        ("{EMPTY-GPO}", "Domain Computers"): PermissionLevel.CUSTOM,
    }
    return FakeDirectory(gpos, permissions)
