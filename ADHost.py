#!/usr/bin/python3

import os, subprocess

from ADCommon import logger, banner, Summary, PromotionError

########################
### Domain promotion ###
########################

POWERSHELL = ["powershell.exe", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command"]

# Win32_ComputerSystem.DomainRole
DOMAIN_ROLES = {
	0: "Standalone Workstation",
	1: "Member Workstation",
	2: "Standalone Server",
	3: "Member Server",
	4: "Backup Domain Controller",
	5: "Primary Domain Controller"
}

# Secrets reach PowerShell through the environment, never on the command line
DSRM_PASSWORD_VARIABLE = "ADPROV_DSRM_PASSWORD"
PROMOTION_USER_VARIABLE = "ADPROV_PROMOTION_USER"
PROMOTION_PASSWORD_VARIABLE = "ADPROV_PROMOTION_PASSWORD"

def psQuote(value):
	return "'" + str(value).replace("'", "''") + "'"

def runPowerShell(script, env = None):
	logger.debug("Running PowerShell: %s", script)
	try:
		result = subprocess.run(POWERSHELL + [script], capture_output = True, text = True, env = env)
	except OSError as e:
		raise PromotionError(f"Cannot run PowerShell: {e}") from e
	if result.returncode != 0:
		raise PromotionError(f"PowerShell exited with code {result.returncode}: {result.stderr.strip()}")
	return result.stdout

def getDomainRole():
	output = runPowerShell("(Get-CimInstance -ClassName Win32_ComputerSystem).DomainRole")
	try:
		return int(output.strip())
	except ValueError as e:
		raise PromotionError(f"Unexpected DomainRole value: {output.strip()}") from e

def buildPromotionCommand(mode, domain, netbios = None, forestMode = "WinThreshold", domainMode = "WinThreshold",
						siteName = None, databasePath = None, sysvolPath = None, reboot = True, installFeature = True):
	"""PowerShell script promoting this server to a domain controller.

	mode "forest" creates a new forest (Install-ADDSForest), mode "replica"
	adds a domain controller to an existing domain (Install-ADDSDomainController).
	"""
	lines = []
	if installFeature:
		lines.append("Install-WindowsFeature -Name AD-Domain-Services -IncludeManagementTools | Out-Null")
	lines.append("Import-Module ADDSDeployment")
	lines.append(f"$dsrm = ConvertTo-SecureString $env:{DSRM_PASSWORD_VARIABLE} -AsPlainText -Force")

	if mode == "forest":
		command = f"Install-ADDSForest -DomainName {psQuote(domain)}"
		if netbios:
			command += f" -DomainNetbiosName {psQuote(netbios)}"
		command += f" -ForestMode {psQuote(forestMode)} -DomainMode {psQuote(domainMode)}"
	elif mode == "replica":
		lines.append(f"$cred = New-Object System.Management.Automation.PSCredential($env:{PROMOTION_USER_VARIABLE}, "
					f"(ConvertTo-SecureString $env:{PROMOTION_PASSWORD_VARIABLE} -AsPlainText -Force))")
		command = f"Install-ADDSDomainController -DomainName {psQuote(domain)} -Credential $cred"
		if siteName:
			command += f" -SiteName {psQuote(siteName)}"
	else:
		raise ValueError(f"Unknown promotion mode {mode}")

	command += " -InstallDns -SafeModeAdministratorPassword $dsrm"
	if databasePath:
		command += f" -DatabasePath {psQuote(databasePath)}"
	if sysvolPath:
		command += f" -SysvolPath {psQuote(sysvolPath)}"
	if not reboot:
		command += " -NoRebootOnCompletion"
	command += " -Force"
	lines.append(command)
	return "\n".join(lines)

def promoteDC(domain, safeModePassword, mode = "forest", netbios = None, credentialUser = None, credentialPassword = None,
			whatIf = False, **options):
	banner("Promoting this server to a domain controller")

	summary = Summary()
	try:
		role = getDomainRole()
		if role >= 4:
			summary.existing("This server is already a domain controller (%s)", DOMAIN_ROLES[role])
			summary.report("Domain promotion")
			return summary
		logger.info("Current domain role: %s", DOMAIN_ROLES.get(role, role))

		script = buildPromotionCommand(mode, domain, netbios, **options)
		if whatIf:
			summary.created("[WhatIf] Would promote this server (%s of %s)", mode, domain)
			return summary

		env = dict(os.environ)
		env[DSRM_PASSWORD_VARIABLE] = safeModePassword
		if mode == "replica":
			if credentialUser == None or credentialPassword == None:
				raise PromotionError("Replica promotion requires domain credentials")
			env[PROMOTION_USER_VARIABLE] = credentialUser
			env[PROMOTION_PASSWORD_VARIABLE] = credentialPassword
		output = runPowerShell(script, env)
		for line in output.splitlines():
			if line.strip():
				logger.debug(line.strip())
		summary.created("Domain controller promotion for %s completed", domain)
	except (PromotionError, ValueError) as e:
		summary.failed("Promotion failed: %s", e)

	summary.report("Domain promotion")
	return summary

#######################
### File unblocking ###
#######################

ZONE_IDENTIFIER = ":Zone.Identifier"

def iterFiles(path):
	if os.path.isfile(path):
		yield path
		return
	for root, _, files in os.walk(path):
		for name in sorted(files):
			# Streams copied to non-NTFS volumes show up as sibling files
			if name.endswith(ZONE_IDENTIFIER):
				continue
			yield os.path.join(root, name)

def unblockFile(path, whatIf = False):
	"""Drop the Zone.Identifier marker of path. Returns False if there was none."""
	marker = path + ZONE_IDENTIFIER
	if whatIf:
		return os.path.exists(marker)
	try:
		os.remove(marker)
	except FileNotFoundError:
		return False
	return True

def unblockFiles(path, whatIf = False):
	banner("Unblocking files")

	summary = Summary()
	if not os.path.exists(path):
		summary.failed("%s does not exist", path)
		summary.report("Unblocked files")
		return summary

	for file in iterFiles(path):
		try:
			if unblockFile(file, whatIf):
				if whatIf:
					summary.created("[WhatIf] Would unblock %s", file)
				else:
					summary.created("Unblocked %s", file)
			else:
				summary.existing("%s is not blocked", file)
		except OSError as e:
			summary.failed("Cannot unblock %s: %s", file, e.strerror or e)

	summary.report("Unblocked files")
	return summary
