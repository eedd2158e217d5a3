#!/usr/bin/python3

import argparse, getpass, os, sys

from dotenv import load_dotenv
from ldap3.core.exceptions import LDAPException

from ADCommon import logger, setupLogging, confirm, collectCredentials, connect_ldap, readRecords, ProvisioningError
import ADDNS, ADHost, ADObjects, ADPolicy, ADSecurity

DEFAULT_LOGFILE = "ADProvision.log"

# Column names each records file must carry
REQUIRED_COLUMNS = {
	"createReverseZones": ("network",),
	"createOUs": ("name",),
	"createGroups": ("name",),
	"createUsers": ("samAccountName",),
	"linkGPOs": ("gpo", "target"),
	"assignACLs": ("target", "trustee", "rights")
}

def env(name, default = None):
	return os.environ.get(f"ADPROV_{name}", default)

def delimiter(value):
	if value == "\\t":
		return "\t"
	if len(value) != 1:
		raise argparse.ArgumentTypeError(f"delimiter must be a single character, not {value!r}")
	return value

def buildParser():
	parser = argparse.ArgumentParser(description = "Active Directory provisioning from delimited records files")

	auth_group = parser.add_argument_group('Authentication options')
	auth_group.add_argument("--server_url", default = env("SERVER_URL"), help = "<ldap[s]/ldap-starttls>://<IP/FQDN>. FQDN is required for Kerberos authentication. LDAPS or StartTLS required to set passwords")
	auth_group.add_argument("--authentication", choices = ["NTLM", "Kerberos"], default = env("AUTHENTICATION", "NTLM"), help = "Authentication method")
	auth_group.add_argument("--username", default = env("USERNAME"), help = "Username for authentication")
	auth_group.add_argument("--nthash", default = env("NTHASH"), help = "NT hash for NTLM authentication")
	auth_group.add_argument("--password", default = env("PASSWORD"), help = "Password for NTLM authentication. Prompted for when missing")
	auth_group.add_argument("--domain", default = env("DOMAIN"), help = "Domain (FQDN) to provision")
	auth_group.add_argument("--ccache", default = env("CCACHE"), help = "Path to .ccache file for Kerberos authentication")

	promote_group = parser.add_argument_group('Domain controller promotion options')
	promote_group.add_argument("--promoteDC", choices = ["forest", "replica"], help = "Promote this server: new forest or replica domain controller of an existing domain")
	promote_group.add_argument("--netbios", help = "NetBIOS name of a new domain")
	promote_group.add_argument("--forestMode", default = "WinThreshold", help = "Forest functional level of a new forest")
	promote_group.add_argument("--domainMode", default = "WinThreshold", help = "Domain functional level of a new domain")
	promote_group.add_argument("--siteName", help = "Site of a replica domain controller")
	promote_group.add_argument("--noReboot", action = "store_true", help = "Do not reboot once promoted")

	dns_group = parser.add_argument_group('DNS options')
	dns_group.add_argument("--createReverseZones", metavar = "FILE", help = "Records file of networks (network[,partition][,primaryServer]) to create reverse lookup zones for")
	dns_group.add_argument("--primaryServer", help = "Primary name server of created zones. Defaults to the connected domain controller")

	objects_group = parser.add_argument_group('Directory objects options')
	objects_group.add_argument("--createOUs", metavar = "FILE", help = "Records file of OUs (name,path,description,protected)")
	objects_group.add_argument("--createGroups", metavar = "FILE", help = "Records file of groups (name,path,scope,category,description,samAccountName,members)")
	objects_group.add_argument("--createUsers", metavar = "FILE", help = "Records file of users (samAccountName,firstName,lastName,displayName,path,password,email,groups,enabled,...)")

	gpo_group = parser.add_argument_group('Group Policy options')
	gpo_group.add_argument("--linkGPOs", metavar = "FILE", help = "Records file of GPO links (gpo,target,enabled,enforced,order)")

	acl_group = parser.add_argument_group('ACLs options')
	acl_group.add_argument("--assignACLs", metavar = "FILE", help = "Records file of ACEs (target,trustee,rights,access,objectType,inheritedObjectType,inherit)")

	unblock_group = parser.add_argument_group('File unblocking options')
	unblock_group.add_argument("--unblockFiles", metavar = "PATH", help = "File or directory whose files lose their Zone.Identifier marker")

	general_group = parser.add_argument_group('General options')
	general_group.add_argument("--delimiter", type = delimiter, default = env("DELIMITER", ","), help = "Records file delimiter, a single character (\\t for tab)")
	general_group.add_argument("--logfile", default = env("LOGFILE", DEFAULT_LOGFILE), help = "Log file, appended to")
	general_group.add_argument("--yes", action = "store_true", help = "Do not ask for confirmation")
	general_group.add_argument("--whatIf", action = "store_true", help = "Only report what would be created")
	general_group.add_argument("--verbose", action = "store_true", help = "Debug output on the console")

	return parser

class Session:
	"""Opens the LDAP connection on first use."""

	def __init__(self, args):
		self.args = args
		self.conn = None

	def connection(self):
		if self.conn == None:
			args = self.args
			self.conn = connect_ldap(args.server_url, args.username, args.password, args.nthash, args.domain, args.authentication, args.ccache)
			print()
		return self.conn

	def close(self):
		if self.conn != None:
			self.conn.unbind()
			self.conn = None

def loadRecords(args, option):
	return readRecords(getattr(args, option), args.delimiter, REQUIRED_COLUMNS[option])

def run(args):
	session = Session(args)
	summaries = {}
	whatIf = args.whatIf

	def ask(question):
		if confirm(question, args.yes or whatIf):
			return True
		logger.warning("Skipped by operator: %s", question)
		return False

	try:
		if args.promoteDC != None:
			if args.domain == None:
				print("[-] --domain is required for promotion\n")
				sys.exit(1)
			if ask(f"Promote this server ({args.promoteDC}) for domain {args.domain}?"):
				safeModePassword = env("DSRM_PASSWORD")
				if safeModePassword == None and not whatIf:
					safeModePassword = getpass.getpass("[?] Directory Services Restore Mode password: ")
				if args.promoteDC == "replica" and args.username and not whatIf:
					args.password = collectCredentials(f"{args.domain}\\{args.username}", args.password, None, "NTLM")
				summaries["promoteDC"] = ADHost.promoteDC(args.domain, safeModePassword, args.promoteDC, args.netbios,
					f"{args.domain}\\{args.username}" if args.username else None, args.password, whatIf,
					forestMode = args.forestMode, domainMode = args.domainMode, siteName = args.siteName, reboot = not args.noReboot)
			print()

		directory_operations = [
			("createReverseZones", "Create reverse lookup zones listed in {}?",
				lambda records: ADDNS.createReverseZones(session.connection(), args.domain, records, args.primaryServer, whatIf)),
			("createOUs", "Create organizational units listed in {}?",
				lambda records: ADObjects.createOUs(session.connection(), args.domain, records, whatIf)),
			("createGroups", "Create groups listed in {}?",
				lambda records: ADObjects.createGroups(session.connection(), args.domain, records, whatIf)),
			("createUsers", "Create users listed in {}?",
				lambda records: ADObjects.createUsers(session.connection(), args.domain, records, whatIf)),
			("linkGPOs", "Link GPOs listed in {}?",
				lambda records: ADPolicy.linkGPOs(session.connection(), args.domain, records, whatIf)),
			("assignACLs", "Assign ACLs listed in {}?",
				lambda records: ADSecurity.assignACLs(session.connection(), args.domain, records, whatIf))
		]
		for option, question, operation in directory_operations:
			path = getattr(args, option)
			if path == None:
				continue
			if not ask(question.format(path)):
				continue
			records = loadRecords(args, option)
			logger.info("Read %d record(s) from %s", len(records), path)
			summaries[option] = operation(records)
			print()

		if args.unblockFiles != None:
			if ask(f"Unblock files under {args.unblockFiles}?"):
				summaries["unblockFiles"] = ADHost.unblockFiles(args.unblockFiles, whatIf)
			print()
	finally:
		session.close()

	return summaries

def main(argv = None):
	load_dotenv()
	parser = buildParser()
	args = parser.parse_args(argv)

	setupLogging(args.logfile, args.verbose)
	logger.debug("Started with %s", " ".join(sys.argv[1:]))

	try:
		summaries = run(args)
	except ProvisioningError as e:
		logger.error("%s", e)
		sys.exit(1)
	except LDAPException as e:
		logger.error("LDAP error: %s", e)
		sys.exit(1)

	if len(summaries) == 0:
		print("[-] Nothing to do\n")
		parser.print_usage()
	elif any(summary["failed"] for summary in summaries.values()):
		sys.exit(2)

if __name__ == "__main__":
	main()
