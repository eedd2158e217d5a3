#!/usr/bin/python3

import re

from ldap3 import MODIFY_REPLACE, BASE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ADCommon import banner, Summary, ProvisioningError, domainToDN, qualifyDN, findOne, textValue, checkResult, parseBool

##############
### gPLink ###
##############

# https://learn.microsoft.com/en-us/openspecs/windows_protocols/ms-gpol/08090b22-bc16-49f4-8e10-f27a8fb16d18
GPLINK_DISABLED = 0x1
GPLINK_ENFORCED = 0x2

GPLINK_PATTERN = re.compile(r"\[LDAP://([^;\]]+);(\d+)\]", re.IGNORECASE)

def parseGPLink(gplink):
	"""Return the [(gpoDN, options)] list held in a gPLink value. The last link has link order 1."""
	if gplink == None:
		return []
	return [(dn, int(options)) for dn, options in GPLINK_PATTERN.findall(gplink)]

def buildGPLink(links):
	return "".join(f"[LDAP://{dn};{options}]" for dn, options in links)

def linkOptions(enabled = True, enforced = False):
	options = 0
	if not enabled:
		options |= GPLINK_DISABLED
	if enforced:
		options |= GPLINK_ENFORCED
	return options

def findLink(links, gpoDN):
	for i, (dn, _) in enumerate(links):
		if dn.lower() == gpoDN.lower():
			return i
	return None

def insertLink(links, gpoDN, options, order = None):
	"""Insert a link with the given link order (1 is the highest precedence, last in gPLink). None adds it with the lowest."""
	links = list(links)
	if order == None:
		index = 0
	else:
		index = min(max(len(links) - order + 1, 0), len(links))
	links.insert(index, (gpoDN, options))
	return links

###########
### GPO ###
###########

def policiesDN(baseDN):
	return f"CN=Policies,CN=System,{baseDN}"

def findGPO(conn, baseDN, gpo):
	"""Find a groupPolicyContainer by display name or {GUID}; returns its DN or None."""
	gpo = gpo.strip()
	escaped = escape_filter_chars(gpo)
	if gpo.startswith("{") and gpo.endswith("}"):
		filter = f"(&(objectClass=groupPolicyContainer)(cn={escaped}))"
	else:
		filter = f"(&(objectClass=groupPolicyContainer)(displayName={escaped}))"
	entry = findOne(conn, policiesDN(baseDN), filter, attributes = ["displayName"])
	if entry == None:
		return None
	return entry["dn"]

def getGPLink(conn, targetDN):
	entry = findOne(conn, targetDN, "(objectClass=*)", attributes = ["gPLink"], scope = BASE)
	if entry == None:
		raise ProvisioningError(f"Target {targetDN} not found")
	return textValue(entry, "gPLink")

def linkGPO(conn, gpoDN, targetDN, enabled = True, enforced = False, order = None, whatIf = False):
	"""Link gpoDN to targetDN. Returns False when the link already exists."""
	links = parseGPLink(getGPLink(conn, targetDN))
	if findLink(links, gpoDN) != None:
		return False
	if whatIf:
		return True
	links = insertLink(links, gpoDN, linkOptions(enabled, enforced), order)
	succeeded = conn.modify(targetDN, {"gPLink": [(MODIFY_REPLACE, [buildGPLink(links)])]})
	checkResult(conn, succeeded, f"Linking {gpoDN} to {targetDN}")
	return True

def linkGPOs(conn, domain, records, whatIf = False):
	banner("Linking group policy objects")

	baseDN = domainToDN(domain)
	summary = Summary()
	for record in records:
		line = record.get("_line", "?")
		target = qualifyDN(record["target"], baseDN)
		gpo = record["gpo"]
		try:
			gpoDN = findGPO(conn, baseDN, gpo)
			if gpoDN == None:
				summary.failed("Line %s: GPO %s not found", line, gpo)
				continue
			order = int(record["order"]) if record.get("order") else None
			enabled = parseBool(record.get("enabled"), default = True)
			enforced = parseBool(record.get("enforced"), default = False)
			if not linkGPO(conn, gpoDN, target, enabled, enforced, order, whatIf):
				summary.existing("GPO %s already linked to %s", gpo, target)
			elif whatIf:
				summary.created("[WhatIf] Would link GPO %s to %s", gpo, target)
			else:
				summary.created("GPO %s linked to %s (enabled=%s, enforced=%s)", gpo, target, enabled, enforced)
		except (LDAPException, ProvisioningError, ValueError) as e:
			summary.failed("Line %s: cannot link GPO %s to %s: %s", line, gpo, target, e)

	summary.report("GPO links")
	return summary
