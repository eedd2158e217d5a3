#!/usr/bin/python3

import codecs, csv, getpass, io, logging, sys
from collections import Counter

# LDAP connection libs
from ldap3 import Server, Connection, NTLM, SASL, KERBEROS, ALL, BASE, SUBTREE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn, escape_rdn

logger = logging.getLogger("ADProvision")

##################
### Exceptions ###
##################

class ProvisioningError(Exception):
	pass

class RecordsError(ProvisioningError):
	pass

class PromotionError(ProvisioningError):
	pass

###############
### Logging ###
###############

class ConsoleFormatter(logging.Formatter):
	PREFIXES = {
		logging.DEBUG: "[*]",
		logging.INFO: "[+]",
		logging.WARNING: "[!]",
		logging.ERROR: "[-]",
		logging.CRITICAL: "[-]"
	}

	def format(self, record):
		return "{} {}".format(self.PREFIXES.get(record.levelno, "[?]"), record.getMessage())

def setupLogging(logfile = None, verbose = False):
	logger.setLevel(logging.DEBUG)
	for handler in list(logger.handlers):
		logger.removeHandler(handler)
		handler.close()

	console_handler = logging.StreamHandler(sys.stdout)
	console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
	console_handler.setFormatter(ConsoleFormatter())
	logger.addHandler(console_handler)

	if logfile != None:
		# Appended, never truncated
		file_handler = logging.FileHandler(logfile, mode = "a", encoding = "utf-8")
		file_handler.setLevel(logging.DEBUG)
		file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
		logger.addHandler(file_handler)

	return logger

def banner(title):
	print("-----------------------------------------------------")
	print(f"[+] {title}")
	print("-----------------------------------------------------")
	print()
	logger.debug("=== %s ===", title)

class Summary(Counter):
	"""Per-operation tally of created/existing/failed/skipped records."""

	def created(self, message, *args):
		self["created"] += 1
		logger.info(message, *args)

	def existing(self, message, *args):
		self["existing"] += 1
		logger.info(message, *args)

	def failed(self, message, *args):
		self["failed"] += 1
		logger.error(message, *args)

	def skipped(self, message, *args):
		self["skipped"] += 1
		logger.warning(message, *args)

	def report(self, title):
		logger.info("%s: %d created, %d existing, %d failed, %d skipped", title,
					self["created"], self["existing"], self["failed"], self["skipped"])

###################
### Interaction ###
###################

def confirm(question, assume_yes = False):
	if assume_yes:
		logger.debug("Confirmation assumed: %s", question)
		return True
	answer = input(f"[?] {question} [y/N] ").strip().lower()
	return answer in ("y", "yes", "o", "oui")

def collectCredentials(username, password, nthash, authentication):
	if authentication == "NTLM" and password == None and nthash == None:
		password = getpass.getpass(f"[?] Password for {username}: ")
	return password

#######################
### Records parsing ###
#######################

COMMENT_PREFIX = "#"

def readRecords(path, delimiter = ",", required = ()):
	"""Read a delimited text file with a header row.

	Headers and values are stripped, blank lines and lines starting with '#'
	are skipped. Each record gets a '_line' key holding its line number in the
	file so that log lines can point back to it.
	"""
	try:
		with open(path, "rb") as f:
			data = f.read()
	except OSError as e:
		raise RecordsError(f"{path}: {e.strerror}") from e

	if data.startswith(codecs.BOM_UTF8):
		data = data[len(codecs.BOM_UTF8):]
	try:
		text = data.decode("utf-8")
	except UnicodeDecodeError as e:
		line = data[:e.start].count(b"\n") + 1
		raise RecordsError(f"{path}: line {line} is not valid UTF-8, save the file as UTF-8") from e

	records = []
	header = None
	reader = csv.reader(io.StringIO(text, newline = ""), delimiter = delimiter)
	try:
		for row in reader:
			if not row or all(field.strip() == "" for field in row):
				continue
			if row[0].strip().startswith(COMMENT_PREFIX):
				continue
			if header == None:
				header = [field.strip() for field in row]
				missing = [column for column in required if column not in header]
				if missing:
					raise RecordsError(f"{path}: missing required column(s): {', '.join(missing)}")
				continue
			record = {}
			for i, column in enumerate(header):
				record[column] = row[i].strip() if i < len(row) else ""
			record["_line"] = reader.line_num
			records.append(record)
	except csv.Error as e:
		raise RecordsError(f"{path}: line {reader.line_num}: {e}") from e

	if header == None:
		raise RecordsError(f"{path}: no header row")

	return records

TRUE_VALUES = ("1", "true", "yes", "y", "enabled", "on", "oui", "$true")
FALSE_VALUES = ("0", "false", "no", "n", "disabled", "off", "non", "$false")

def parseBool(value, default = False):
	if value == None:
		return default
	value = str(value).strip().lower()
	if value == "":
		return default
	if value in TRUE_VALUES:
		return True
	if value in FALSE_VALUES:
		return False
	raise ValueError(f"Not a boolean: {value}")

def splitList(value):
	if value == None:
		return []
	return [item.strip() for item in value.replace(",", ";").split(";") if item.strip() != ""]

##################
### DN helpers ###
##################

def domainToDN(domain):
	return ",".join(f"DC={component}" for component in domain.split(".") if component != "")

def qualifyDN(path, baseDN):
	if path == None or path.strip() == "":
		return baseDN
	path = path.strip()
	if path.lower().endswith(baseDN.lower()):
		return path
	return f"{path},{baseDN}"

def parentDN(dn):
	components = parse_dn(dn, strip = True)
	return ",".join(f"{attr}={value}" for attr, value, _ in components[1:])

def rdnValue(dn):
	return parse_dn(dn, strip = True)[0][1]

def buildDN(rdnAttribute, name, parent):
	return f"{rdnAttribute}={escape_rdn(name)},{parent}"

def dnDepth(dn):
	return len(parse_dn(dn, strip = True))

######################
### LDAP functions ###
######################

def connect_ldap(server_url, username, password, nthash, domain, authentication, ccache):
	banner("Connecting to LDAP server")

	if (server_url == None or username == None or domain == None or authentication == None):
		print("[-] ServerURL/Username/Domain/AuthenticationMethod missing\n")
		sys.exit(1)

	use_ssl = server_url.lower().startswith("ldaps://")
	if server_url.lower().startswith("ldap-starttls://"):
		use_start_tls = True
		server_url = "ldap://{}".format(server_url[len("ldap-starttls://"):])
	else:
		use_start_tls = False

	server = Server(server_url, use_ssl = use_ssl, get_info = ALL)

	user_dn_ntlm = f"{domain}\\{username}"
	user_dn_kerberos = f"{username}@{domain}"
	if authentication == "NTLM":
		password = collectCredentials(username, password, nthash, authentication)
		if (nthash != None):
			password = "0" * 32 + ":" + nthash
		conn = Connection(server, user_dn_ntlm, password, authentication = NTLM, auto_bind = True)
		if use_start_tls:
			conn.start_tls()
		logger.info("Authenticated successfully using NTLM as %s", user_dn_ntlm)
		return conn
	elif authentication == "Kerberos":
		# Kerberos support is an optional extra
		from gssapi import Credentials
		store = {"ccache": ccache} if ccache != None else None
		creds = Credentials(usage = "initiate", store = store)
		conn = Connection(server, user_dn_kerberos, authentication = SASL, sasl_mechanism = KERBEROS,
						sasl_credentials = (None, None, creds), auto_bind = True)
		if use_start_tls:
			conn.start_tls()
		logger.info("Authenticated successfully using Kerberos as %s", user_dn_kerberos)
		return conn
	else:
		print("[-] Invalid authentication method\n")
		sys.exit(1)

def search(conn, baseDN, filter = "(objectClass=*)", attributes = None, scope = SUBTREE, controls = None):
	conn.search(search_base = baseDN,
				search_filter = filter,
				search_scope = scope,
				attributes = attributes if attributes != None else [],
				controls = controls)
	return [entry for entry in (conn.response or []) if entry["type"] == "searchResEntry"]

def findOne(conn, baseDN, filter, attributes = None, scope = SUBTREE, controls = None):
	entries = search(conn, baseDN, filter, attributes, scope, controls)
	if len(entries) == 0:
		return None
	return entries[0]

def objectExists(conn, dn):
	return findOne(conn, dn, "(objectClass=*)", scope = BASE) != None

ACCOUNT_CLASSES = ("group", "user", "computer")

def accountFilter(name, classes = ACCOUNT_CLASSES):
	"""Filter matching a security principal of one of the classes by sAMAccountName or name."""
	escaped = escape_filter_chars(name)
	classFilter = "".join(f"(objectClass={objectClass})" for objectClass in classes)
	return f"(&(|{classFilter})(|(sAMAccountName={escaped})(name={escaped})))"

def rawValue(entry, attribute, default = None):
	values = entry["raw_attributes"].get(attribute, [])
	if len(values) == 0:
		return default
	return values[0]

def rawValues(entry, attribute):
	return list(entry["raw_attributes"].get(attribute, []))

def textValue(entry, attribute, default = None):
	value = rawValue(entry, attribute)
	if value == None:
		return default
	if isinstance(value, bytes):
		return value.decode()
	return value

def resultMessage(conn):
	result = conn.result or {}
	message = result.get("message", "")
	description = result.get("description", "")
	if message:
		return f"{description}: {message}"
	return description

def checkResult(conn, succeeded, action):
	if not succeeded:
		raise LDAPException(f"{action} failed ({resultMessage(conn)})")
