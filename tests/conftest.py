from types import SimpleNamespace

import pytest
from ldap3 import BASE, MODIFY_ADD, MODIFY_REPLACE

from ADCommon import logger
from ADSecurity import SID, SECURITY_DESCRIPTOR

DOMAIN = "corp.local"
BASE_DN = "DC=corp,DC=local"
DOMAIN_SID = "S-1-5-21-1004336348-1177238915-682003330"
DEFAULT_SDDL = "O:BAG:BAD:(A;;GA;;;SY)(A;;RP;;;AU)"

def parseFilter(text, i):
	"""Parse the filter starting at text[i] == "(" into nested (op, children) / ("=", attribute, value) tuples."""
	if text[i + 1] in "&|!":
		op = text[i + 1]
		i += 2
		children = []
		while text[i] == "(":
			child, i = parseFilter(text, i)
			children.append(child)
		return (op, children), i + 1
	end = text.index(")", i)
	attribute, value = text[i + 1:end].split("=", 1)
	return ("=", attribute, value), end + 1

def toBytes(value):
	if isinstance(value, bytes):
		return value
	return str(value).encode()

class FakeDirectory:
	"""In-memory stand-in for a bound ldap3 Connection.

	Understands the BASE/SUBTREE searches and the equality, presence, AND and
	OR filters the provisioning code sends, plus add and modify.
	"""

	def __init__(self):
		self.entries = {}
		self.added = []
		self.modified = []
		self.passwords = {}
		self.response = None
		self.result = None
		self.unbound = False
		self.server = SimpleNamespace(info = None)
		self.extend = SimpleNamespace(microsoft = SimpleNamespace(modify_password = self.modify_password))
		self.put(BASE_DN, ["top", "domain"], {"objectSid": SID.from_string(DOMAIN_SID).to_bytes()})

	def put(self, dn, objectClass, attributes = None):
		stored = {"objectClass": list(objectClass)}
		for name, value in (attributes or {}).items():
			stored[name] = list(value) if isinstance(value, list) else [value]
		rdnAttribute, rdnValue = dn.split(",")[0].split("=", 1)
		if rdnAttribute.lower() not in (name.lower() for name in stored):
			stored[rdnAttribute] = [rdnValue]
		if "name" not in stored:
			stored["name"] = [rdnValue]
		if "nTSecurityDescriptor" not in stored:
			stored["nTSecurityDescriptor"] = [SECURITY_DESCRIPTOR.from_sddl(DEFAULT_SDDL).to_bytes()]
		self.entries[dn.lower()] = {"dn": dn, "attributes": stored}

	def exists(self, dn):
		return dn.lower() in self.entries

	def values(self, dn, attribute):
		return self.lookup(self.entries[dn.lower()], attribute)

	def lookup(self, entry, attribute):
		for name, values in entry["attributes"].items():
			if name.lower() == attribute.lower():
				return values
		return []

	def matches(self, entry, filter):
		node, _ = parseFilter(filter, 0)
		return self.evaluate(entry, node)

	def evaluate(self, entry, node):
		if node[0] == "&":
			return all(self.evaluate(entry, child) for child in node[1])
		if node[0] == "|":
			return any(self.evaluate(entry, child) for child in node[1])
		if node[0] == "!":
			return not self.evaluate(entry, node[1][0])
		_, attribute, value = node
		values = self.lookup(entry, attribute)
		if value == "*":
			return len(values) > 0
		return any(toBytes(v).lower() == value.encode().lower() for v in values)

	def succeed(self):
		self.result = {"result": 0, "description": "success", "message": ""}
		return True

	def fail(self, description):
		self.result = {"result": 1, "description": description, "message": ""}
		return False

	def search(self, search_base, search_filter, search_scope = BASE, attributes = None, controls = None):
		base = search_base.lower()
		self.response = []
		for key, entry in self.entries.items():
			if search_scope == BASE:
				inScope = key == base
			else:
				inScope = key == base or key.endswith("," + base)
			if not inScope or not self.matches(entry, search_filter):
				continue
			raw = {}
			for attribute in attributes or []:
				values = self.lookup(entry, attribute)
				if values:
					raw[attribute] = [toBytes(v) for v in values]
			self.response.append({"type": "searchResEntry", "dn": entry["dn"], "raw_attributes": raw, "attributes": {}})
		return self.succeed()

	def add(self, dn, object_class = None, attributes = None):
		if self.exists(dn):
			return self.fail("entryAlreadyExists")
		self.put(dn, object_class or [], attributes)
		self.added.append(dn)
		return self.succeed()

	def modify(self, dn, changes, controls = None):
		if not self.exists(dn):
			return self.fail("noSuchObject")
		attributes = self.entries[dn.lower()]["attributes"]
		for attribute, operations in changes.items():
			for operation, values in operations:
				if operation == MODIFY_ADD:
					attributes.setdefault(attribute, []).extend(values)
				elif operation == MODIFY_REPLACE:
					attributes[attribute] = list(values)
		self.modified.append((dn, changes))
		return self.succeed()

	def modify_password(self, dn, password):
		self.passwords[dn] = password
		return self.succeed()

	def unbind(self):
		self.unbound = True

@pytest.fixture
def directory():
	return FakeDirectory()

@pytest.fixture
def write_records(tmp_path):
	def write(content, name = "records.csv"):
		path = tmp_path / name
		path.write_text(content, encoding = "utf-8")
		return str(path)
	return write

@pytest.fixture(autouse = True)
def reset_logger():
	yield
	for handler in list(logger.handlers):
		logger.removeHandler(handler)
		handler.close()
