#!/usr/bin/python3

from ldap3 import MODIFY_ADD, MODIFY_REPLACE, BASE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ADCommon import (logger, banner, Summary, ProvisioningError, domainToDN, qualifyDN, buildDN, dnDepth,
	findOne, objectExists, rawValues, textValue, checkResult, parseBool, splitList, accountFilter, ACCOUNT_CLASSES)
import ADSecurity

##########################
### userAccountControl ###
##########################

# https://learn.microsoft.com/en-us/troubleshoot/windows-server/identity/useraccountcontrol-manipulate-account-properties
USER_ACCOUNT_CONTROL_MASK = {
	"SCRIPT": 0x00000001,
	"ACCOUNTDISABLE": 0x00000002,
	"HOMEDIR_REQUIRED": 0x00000008,
	"LOCKOUT": 0x00000010,
	"PASSWD_NOTREQD": 0x00000020,
	"PASSWD_CANT_CHANGE": 0x00000040,
	"ENCRYPTED_TEXT_PWD_ALLOWED": 0x00000080,
	"NORMAL_ACCOUNT": 0x00000200,
	"WORKSTATION_TRUST_ACCOUNT": 0x00001000,
	"SERVER_TRUST_ACCOUNT": 0x00002000,
	"DONT_EXPIRE_PASSWORD": 0x00010000,
	"SMARTCARD_REQUIRED": 0x00040000,
	"TRUSTED_FOR_DELEGATION": 0x00080000,
	"NOT_DELEGATED": 0x00100000,
	"DONT_REQ_PREAUTH": 0x00400000,
	"PASSWORD_EXPIRED": 0x00800000
}

def parseUserAccountControl(uacVal):
	return "|".join(name for name, value in USER_ACCOUNT_CONTROL_MASK.items() if value & int(uacVal))

def buildUserAccountControl(uacStr):
	uacVal = 0
	for flag in uacStr.split("|"):
		flag = flag.strip().upper()
		if flag == "":
			continue
		if flag not in USER_ACCOUNT_CONTROL_MASK:
			raise ValueError(f"Unknown userAccountControl flag {flag}")
		uacVal |= USER_ACCOUNT_CONTROL_MASK[flag]
	return uacVal

############################
### Organizational Units ###
############################

def ouDN(record, baseDN):
	return buildDN("OU", record["name"], qualifyDN(record.get("path"), baseDN))

def createOUs(conn, domain, records, whatIf = False):
	banner("Creating organizational units")

	baseDN = domainToDN(domain)
	summary = Summary()

	# Parents before children, whatever the order in the file
	planned = []
	for record in records:
		try:
			planned.append((dnDepth(ouDN(record, baseDN)), record))
		except (LDAPException, ValueError, KeyError) as e:
			summary.failed("Line %s: invalid OU record: %s", record.get("_line", "?"), e)
	planned.sort(key = lambda item: item[0])

	for _, record in planned:
		line = record.get("_line", "?")
		dn = ouDN(record, baseDN)
		try:
			protected = parseBool(record.get("protected"), default = True)
			if objectExists(conn, dn):
				summary.existing("OU %s already exists", dn)
				continue
			if whatIf:
				summary.created("[WhatIf] Would create OU %s", dn)
				continue

			attributes = {"ou": record["name"]}
			if record.get("description"):
				attributes["description"] = record["description"]
			succeeded = conn.add(dn, ["top", "organizationalUnit"], attributes)
			checkResult(conn, succeeded, f"Creating OU {dn}")
		except (LDAPException, ProvisioningError, ValueError) as e:
			summary.failed("Line %s: cannot create OU %s: %s", line, dn, e)
			continue

		if not protected:
			summary.created("OU %s created", dn)
			continue
		try:
			ADSecurity.protectFromDeletion(conn, dn)
			summary.created("OU %s created and protected from accidental deletion", dn)
		except (LDAPException, ProvisioningError) as e:
			summary.failed("Line %s: OU %s created but not fully configured, not protected from deletion: %s", line, dn, e)

	summary.report("Organizational units")
	return summary

##############
### Groups ###
##############

GROUP_SCOPES = {
	"global": 0x00000002,
	"domainlocal": 0x00000004,
	"local": 0x00000004,
	"universal": 0x00000008
}
GROUP_TYPE_SECURITY_ENABLED = 0x80000000

def groupType(scope = "Global", category = "Security"):
	scope = (scope or "Global").strip().lower().replace(" ", "").replace("_", "")
	category = (category or "Security").strip().lower()
	if scope not in GROUP_SCOPES:
		raise ValueError(f"Unknown group scope {scope}")
	if category not in ("security", "distribution"):
		raise ValueError(f"Unknown group category {category}")
	value = GROUP_SCOPES[scope]
	if category == "security":
		value |= GROUP_TYPE_SECURITY_ENABLED
	# groupType is a signed 32-bit integer
	if value >= 2**31:
		value -= 2**32
	return value

def findAccount(conn, baseDN, name, attributes = None, classes = ACCOUNT_CLASSES):
	"""Find a user, group or computer by sAMAccountName, name or distinguishedName."""
	if "=" in name:
		return findOne(conn, name, "(objectClass=*)", attributes = attributes, scope = BASE)
	return findOne(conn, baseDN, accountFilter(name, classes), attributes = attributes)

def findSamAccount(conn, baseDN, sam, objectClass, attributes = None):
	"""Find the account holding sam. Raises when it belongs to an account that is not an objectClass."""
	entry = findOne(conn, baseDN, f"(sAMAccountName={escape_filter_chars(sam)})", attributes = ["objectClass"] + (attributes or []))
	if entry == None:
		return None
	classes = [value.decode().lower() if isinstance(value, bytes) else value.lower() for value in rawValues(entry, "objectClass")]
	if objectClass not in classes:
		raise ProvisioningError(f"sAMAccountName {sam} is already used by {entry['dn']}")
	return entry

def isMember(conn, groupDN, memberDN):
	entry = findOne(conn, groupDN, "(objectClass=*)", attributes = ["member"], scope = BASE)
	if entry == None:
		raise ProvisioningError(f"Group {groupDN} not found")
	members = [value.decode().lower() if isinstance(value, bytes) else value.lower() for value in rawValues(entry, "member")]
	return memberDN.lower() in members

def addMember(conn, groupDN, memberDN, summary, whatIf = False):
	if isMember(conn, groupDN, memberDN):
		summary.existing("%s is already a member of %s", memberDN, groupDN)
		return
	if whatIf:
		summary.created("[WhatIf] Would add %s to %s", memberDN, groupDN)
		return
	succeeded = conn.modify(groupDN, {"member": [(MODIFY_ADD, [memberDN])]})
	checkResult(conn, succeeded, f"Adding {memberDN} to {groupDN}")
	summary.created("%s added to %s", memberDN, groupDN)

def createGroups(conn, domain, records, whatIf = False):
	banner("Creating groups")

	baseDN = domainToDN(domain)
	summary = Summary()
	pendingMembers = []
	for record in records:
		line = record.get("_line", "?")
		name = record["name"]
		sam = record.get("samAccountName") or name
		try:
			dn = buildDN("CN", name, qualifyDN(record.get("path"), baseDN))
			existing = findSamAccount(conn, baseDN, sam, "group")
			plannedOnly = existing == None and whatIf
			if existing != None:
				summary.existing("Group %s already exists (%s)", sam, existing["dn"])
				dn = existing["dn"]
			elif whatIf:
				summary.created("[WhatIf] Would create group %s", dn)
			else:
				attributes = {
					"sAMAccountName": sam,
					"groupType": groupType(record.get("scope"), record.get("category"))
				}
				if record.get("description"):
					attributes["description"] = record["description"]
				succeeded = conn.add(dn, ["top", "group"], attributes)
				checkResult(conn, succeeded, f"Creating group {dn}")
				summary.created("Group %s created", dn)
			for member in splitList(record.get("members")):
				pendingMembers.append((line, dn, member, plannedOnly))
		except (LDAPException, ProvisioningError, ValueError) as e:
			summary.failed("Line %s: cannot create group %s: %s", line, name, e)

	# Members may be groups listed further down the file
	for line, groupDN, member, plannedOnly in pendingMembers:
		if plannedOnly:
			summary.created("[WhatIf] Would add %s to %s", member, groupDN)
			continue
		try:
			entry = findAccount(conn, baseDN, member)
			if entry == None:
				summary.failed("Line %s: member %s of %s not found", line, member, groupDN)
				continue
			addMember(conn, groupDN, entry["dn"], summary, whatIf)
		except (LDAPException, ProvisioningError) as e:
			summary.failed("Line %s: cannot add %s to %s: %s", line, member, groupDN, e)

	summary.report("Groups")
	return summary

#############
### Users ###
#############

def userCN(record):
	if record.get("displayName"):
		return record["displayName"]
	full = " ".join(part for part in (record.get("firstName", ""), record.get("lastName", "")) if part)
	return full or record["samAccountName"]

USER_OPTIONAL_ATTRIBUTES = {
	"firstName": "givenName",
	"lastName": "sn",
	"email": "mail",
	"description": "description",
	"title": "title",
	"department": "department"
}

def userAttributes(record, domain):
	sam = record["samAccountName"]
	attributes = {
		"sAMAccountName": sam,
		"userPrincipalName": f"{sam}@{domain}",
		"displayName": userCN(record),
		"userAccountControl": USER_ACCOUNT_CONTROL_MASK["NORMAL_ACCOUNT"] | USER_ACCOUNT_CONTROL_MASK["ACCOUNTDISABLE"]
	}
	for column, attribute in USER_OPTIONAL_ATTRIBUTES.items():
		if record.get(column):
			attributes[attribute] = record[column]
	return attributes

def setPassword(conn, dn, password):
	# Requires LDAPS or StartTLS
	succeeded = conn.extend.microsoft.modify_password(dn, password)
	checkResult(conn, succeeded, f"Setting password of {dn}")

def createUser(conn, domain, record, dn):
	"""Create a disabled user, then set its password and enable it. Returns True when enabled."""
	enabled = parseBool(record.get("enabled"), default = None)
	changeAtLogon = parseBool(record.get("changePasswordAtLogon"), default = False)
	password = record.get("password")

	succeeded = conn.add(dn, ["top", "person", "organizationalPerson", "user"], userAttributes(record, domain))
	checkResult(conn, succeeded, f"Creating user {dn}")

	if not password:
		if enabled:
			logger.warning("User %s has no password and stays disabled", dn)
		return False
	try:
		setPassword(conn, dn, password)
		if changeAtLogon:
			succeeded = conn.modify(dn, {"pwdLastSet": [(MODIFY_REPLACE, [0])]})
			checkResult(conn, succeeded, f"Forcing password change of {dn}")
		if enabled != False:
			succeeded = conn.modify(dn, {"userAccountControl": [(MODIFY_REPLACE, [USER_ACCOUNT_CONTROL_MASK["NORMAL_ACCOUNT"]])]})
			checkResult(conn, succeeded, f"Enabling {dn}")
			return True
	except LDAPException as e:
		raise ProvisioningError(f"{dn} created but not fully configured, left disabled: {e}") from e
	return False

def createUsers(conn, domain, records, whatIf = False):
	banner("Creating users")

	baseDN = domainToDN(domain)
	summary = Summary()
	for record in records:
		line = record.get("_line", "?")
		sam = record["samAccountName"]
		try:
			dn = buildDN("CN", userCN(record), qualifyDN(record.get("path"), baseDN))
			existing = findSamAccount(conn, baseDN, sam, "user", ["userAccountControl"])
			if existing != None:
				dn = existing["dn"]
				summary.existing("User %s already exists (%s)", sam, dn)
				if record.get("password") and int(textValue(existing, "userAccountControl", "0")) & USER_ACCOUNT_CONTROL_MASK["ACCOUNTDISABLE"]:
					logger.warning("User %s is disabled, its password was probably never set", dn)
			elif whatIf:
				summary.created("[WhatIf] Would create user %s", dn)
			else:
				enabled = createUser(conn, domain, record, dn)
				summary.created("User %s created (%s)", dn, "enabled" if enabled else "disabled")
		except (LDAPException, ProvisioningError, ValueError) as e:
			summary.failed("Line %s: cannot create user %s: %s", line, sam, e)
			continue

		for group in splitList(record.get("groups")):
			try:
				entry = findAccount(conn, baseDN, group, classes = ("group",))
				if entry == None:
					summary.failed("Line %s: group %s not found for %s", line, group, sam)
					continue
				if whatIf and existing == None:
					summary.created("[WhatIf] Would add %s to %s", dn, entry["dn"])
					continue
				addMember(conn, entry["dn"], dn, summary, whatIf)
			except (LDAPException, ProvisioningError) as e:
				summary.failed("Line %s: cannot add %s to %s: %s", line, sam, group, e)

	summary.report("Users")
	return summary
