import uuid

import pytest

from ADCommon import ProvisioningError
from ADSecurity import (SID, ACE, ACL, ACEType, ACEFlags, ACEAccessRights, SECURITY_DESCRIPTOR, SDDL_TO_ACE_ACCESS_RIGHTS,
	ACE_ACCESS_RIGHTS_TO_SDDL, ACL_REVISION_DS, resolveObjectType, resolveTrustee, getDomainSID, getSecurityDescriptor,
	addACE, protectFromDeletion, assignACLs)
from conftest import DOMAIN, BASE_DN, DOMAIN_SID

USER_CLASS = uuid.UUID("bf967aba-0de6-11d0-a285-00aa003049e2")

def test_sid_string_and_bytes():
	sid = SID.from_string(DOMAIN_SID + "-512")
	data = sid.to_bytes()
	assert data[:2] == b"\x01\x05"
	assert str(SID.from_bytes(data)) == DOMAIN_SID + "-512"
	assert SID.from_bytes(data) == sid

def test_sid_from_sddl_aliases():
	assert str(SID.from_sddl("AU")) == "S-1-5-11"
	assert str(SID.from_sddl("DA", DOMAIN_SID)) == DOMAIN_SID + "-512"
	with pytest.raises(ValueError):
		SID.from_sddl("DA")
	with pytest.raises(ValueError):
		SID.from_sddl("ZZ")

def test_access_rights_sddl():
	assert SDDL_TO_ACE_ACCESS_RIGHTS("RPWP") == 0x30
	assert SDDL_TO_ACE_ACCESS_RIGHTS("0x100") == 0x100
	assert ACE_ACCESS_RIGHTS_TO_SDDL(0x000f01ff) == "GA"
	assert ACE_ACCESS_RIGHTS_TO_SDDL(ACEAccessRights.DELETE | ACEAccessRights.DELETE_TREE) == "DTSD"
	with pytest.raises(ValueError):
		SDDL_TO_ACE_ACCESS_RIGHTS("XX")

def test_resolve_object_type():
	assert resolveObjectType("user") == USER_CLASS
	assert resolveObjectType("{BF967ABA-0DE6-11D0-A285-00AA003049E2}") == USER_CLASS
	assert resolveObjectType("") is None

def test_object_ace_binary_layout():
	ace = ACE.from_sddl("(OA;CIIO;RPWP;bf967a0a-0de6-11d0-a285-00aa003049e2;bf967aba-0de6-11d0-a285-00aa003049e2;AU)")
	data = ace.to_bytes()
	assert data[0] == ACEType.ACCESS_ALLOWED_OBJECT_ACE_TYPE
	assert int.from_bytes(data[2:4], "little") == len(data)
	assert len(data) % 4 == 0
	parsed = ACE.from_bytes(data)
	assert parsed.ObjectType == uuid.UUID("bf967a0a-0de6-11d0-a285-00aa003049e2")
	assert parsed.InheritedObjectType == USER_CLASS
	assert parsed.AceFlags == ACEFlags.CONTAINER_INHERIT_ACE | ACEFlags.INHERIT_ONLY_ACE
	assert str(parsed.Sid) == "S-1-5-11"

def test_security_descriptor_binary_and_sddl():
	sd = SECURITY_DESCRIPTOR.from_sddl("O:BAG:BAD:AI(D;;SDDT;;;WD)(A;CI;RPWP;;;AU)")
	parsed = SECURITY_DESCRIPTOR.from_bytes(sd.to_bytes())
	assert parsed.to_sddl() == "O:S-1-5-32-544G:S-1-5-32-544D:AI(D;;DTSD;;;S-1-1-0)(A;CI;RPWP;;;S-1-5-11)"

def test_security_descriptor_rejects_sacl():
	with pytest.raises(ValueError):
		SECURITY_DESCRIPTOR.from_sddl("O:BAS:(AU;SA;GA;;;WD)")

def test_acl_revision_with_object_aces():
	acl = ACL.from_sddl("(OA;;CR;00299570-246d-11d0-a768-00aa006e0529;;AU)")
	assert acl.to_bytes()[0] == ACL_REVISION_DS

def test_ace_covers():
	broad = ACE.from_sddl("(A;;RPWP;;;AU)")
	narrow = ACE.from_sddl("(A;;RP;;;AU)")
	assert broad.covers(narrow)
	assert not narrow.covers(broad)
	assert not broad.covers(ACE.from_sddl("(A;CI;RP;;;AU)"))
	inherited = ACE.from_sddl("(A;ID;RPWP;;;AU)")
	assert not inherited.covers(narrow)

def test_acl_insert_canonical_order():
	acl = ACL.from_sddl("(A;;RP;;;AU)(A;ID;GA;;;SY)")
	acl.insert(ACE.from_sddl("(A;;WP;;;BA)"))
	acl.insert(ACE.from_sddl("(D;;SD;;;WD)"))
	assert acl.to_sddl() == "(D;;SD;;;S-1-1-0)(A;;RP;;;S-1-5-11)(A;;WP;;;S-1-5-32-544)(A;ID;GA;;;S-1-5-18)"

def test_get_domain_sid(directory):
	assert getDomainSID(directory, BASE_DN) == DOMAIN_SID

def test_resolve_trustee(directory):
	directory.put("CN=Helpdesk,OU=Groups," + BASE_DN, ["top", "group"],
		{"sAMAccountName": "Helpdesk", "objectSid": SID.from_string(DOMAIN_SID + "-1105").to_bytes()})
	assert str(resolveTrustee(directory, BASE_DN, "Helpdesk")) == DOMAIN_SID + "-1105"
	assert str(resolveTrustee(directory, BASE_DN, "CN=Helpdesk,OU=Groups," + BASE_DN)) == DOMAIN_SID + "-1105"
	assert str(resolveTrustee(directory, BASE_DN, "S-1-5-32-544")) == "S-1-5-32-544"
	assert str(resolveTrustee(directory, BASE_DN, "da", DOMAIN_SID)) == DOMAIN_SID + "-512"
	with pytest.raises(ProvisioningError):
		resolveTrustee(directory, BASE_DN, "Nobody")

def test_add_ace_only_once(directory):
	dn = "OU=IT," + BASE_DN
	directory.put(dn, ["top", "organizationalUnit"])
	ace = ACE.from_sddl("(A;CI;RPWP;;;AU)")
	assert addACE(directory, dn, ace)
	assert addACE(directory, dn, ace) is False
	assert len(directory.modified) == 1
	assert "(A;CI;RPWP;;;S-1-5-11)" in getSecurityDescriptor(directory, dn).to_sddl()

def test_add_ace_what_if(directory):
	dn = "OU=IT," + BASE_DN
	directory.put(dn, ["top", "organizationalUnit"])
	assert addACE(directory, dn, ACE.from_sddl("(A;;RP;;;BA)"), whatIf = True)
	assert directory.modified == []

def test_protect_from_deletion(directory):
	dn = "OU=IT," + BASE_DN
	directory.put(dn, ["top", "organizationalUnit"])
	protectFromDeletion(directory, dn)
	first = getSecurityDescriptor(directory, dn).Dacl.aces[0]
	assert first.AceType == ACEType.ACCESS_DENIED_ACE_TYPE
	assert str(first.Sid) == "S-1-1-0"
	assert first.Mask == ACEAccessRights.DELETE | ACEAccessRights.DELETE_TREE

def test_assign_acls(directory):
	target = "OU=IT," + BASE_DN
	directory.put(target, ["top", "organizationalUnit"])
	directory.put("CN=Helpdesk,OU=Groups," + BASE_DN, ["top", "group"],
		{"sAMAccountName": "Helpdesk", "objectSid": SID.from_string(DOMAIN_SID + "-1105").to_bytes()})
	records = [
		{"target": "OU=IT", "trustee": "Helpdesk", "rights": "CR", "objectType": "User-Force-Change-Password",
			"inheritedObjectType": "user", "_line": 2},
		{"target": "OU=IT", "trustee": "DA", "rights": "RPWP", "access": "Deny", "_line": 3},
		{"target": "OU=IT", "trustee": "Nobody", "rights": "RP", "_line": 4},
		{"target": "OU=IT", "trustee": "Helpdesk", "rights": "RP", "access": "Maybe", "_line": 5}
	]
	summary = assignACLs(directory, DOMAIN, records)
	assert summary["created"] == 2
	assert summary["failed"] == 2

	aces = getSecurityDescriptor(directory, target).Dacl.aces
	assert aces[0].AceType == ACEType.ACCESS_DENIED_ACE_TYPE
	assert str(aces[0].Sid) == DOMAIN_SID + "-512"
	delegated = [ace for ace in aces if ace.AceType == ACEType.ACCESS_ALLOWED_OBJECT_ACE_TYPE]
	assert len(delegated) == 1
	assert delegated[0].InheritedObjectType == USER_CLASS
	assert delegated[0].AceFlags == ACEFlags.CONTAINER_INHERIT_ACE | ACEFlags.INHERIT_ONLY_ACE

	again = assignACLs(directory, DOMAIN, records[:2])
	assert again["existing"] == 2
	assert again["created"] == 0
