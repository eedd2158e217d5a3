#!/usr/bin/python3

import enum, io, uuid

from ldap3 import MODIFY_REPLACE, BASE
from ldap3.core.exceptions import LDAPException
from ldap3.protocol.microsoft import security_descriptor_control

from ADCommon import logger, banner, Summary, ProvisioningError, domainToDN, qualifyDN, findOne, rawValue, checkResult, parseBool, accountFilter

#################
### objectSid ###
#################

# Well-known SDDL aliases. Integers are RIDs relative to the domain SID.
# https://docs.microsoft.com/en-us/windows/win32/secauthz/sid-strings
SDDL_NAME_VAL_MAPS = {
	"AN": "S-1-5-7", # Anonymous logon
	"AO": "S-1-5-32-548", # Account operators
	"AU": "S-1-5-11", # Authenticated users
	"BA": "S-1-5-32-544", # Built-in administrators
	"BG": "S-1-5-32-546", # Built-in guests
	"BO": "S-1-5-32-551", # Backup operators
	"BU": "S-1-5-32-545", # Built-in users
	"CO": "S-1-3-0", # Creator owner
	"DA": 512, # Domain administrators
	"DC": 515, # Domain computers
	"DD": 516, # Domain controllers
	"DG": 514, # Domain guests
	"DU": 513, # Domain users
	"EA": 519, # Enterprise administrators
	"ED": "S-1-5-9", # Enterprise domain controllers
	"PA": 520, # Group Policy creator owners
	"PO": "S-1-5-32-550", # Printer operators
	"PS": "S-1-5-10", # Principal self
	"SA": 518, # Schema administrators
	"SO": "S-1-5-32-549", # Server operators
	"SY": "S-1-5-18", # Local system
	"WD": "S-1-1-0" # Everyone
}

# https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-dtyp/f992ad60-0fe4-4b87-9fed-beb478836861
class SID:
	def __init__(self, identifierAuthority = 0, subAuthority = None):
		self.Revision = 1
		self.IdentifierAuthority = identifierAuthority
		self.SubAuthority = list(subAuthority or [])

	@staticmethod
	def from_string(sid_str):
		if not sid_str.upper().startswith("S-1-"):
			raise ValueError(f"{sid_str} is not a SID")
		parts = sid_str[4:].split("-")
		if parts[0].lower().startswith("0x"):
			authority = int(parts[0][2:], 16)
		else:
			authority = int(parts[0])
		return SID(authority, [int(p) for p in parts[1:]])

	@staticmethod
	def from_bytes(data):
		return SID.from_buffer(io.BytesIO(data))

	@staticmethod
	def from_buffer(buff):
		sid = SID()
		sid.Revision = int.from_bytes(buff.read(1), 'little', signed = False)
		count = int.from_bytes(buff.read(1), 'little', signed = False)
		sid.IdentifierAuthority = int.from_bytes(buff.read(6), 'big', signed = False)
		for _ in range(count):
			sid.SubAuthority.append(int.from_bytes(buff.read(4), 'little', signed = False))
		return sid

	def to_bytes(self):
		t = self.Revision.to_bytes(1, 'little', signed = False)
		t += len(self.SubAuthority).to_bytes(1, 'little', signed = False)
		t += self.IdentifierAuthority.to_bytes(6, 'big', signed = False)
		for i in self.SubAuthority:
			t += i.to_bytes(4, 'little', signed = False)
		return t

	@staticmethod
	def from_sddl(sddl, domain_sid = None):
		if len(sddl) > 2:
			return SID.from_string(sddl)
		if sddl not in SDDL_NAME_VAL_MAPS:
			raise ValueError(f"{sddl} is not a known SDDL SID alias")
		value = SDDL_NAME_VAL_MAPS[sddl]
		if isinstance(value, str):
			return SID.from_string(value)
		if domain_sid == None:
			raise ValueError(f"Domain SID required to resolve SDDL alias {sddl}")
		return SID.from_string(f"{domain_sid}-{value}")

	def to_sddl(self):
		return str(self)

	def __str__(self):
		t = 'S-1-'
		if self.IdentifierAuthority < 2**32:
			t += str(self.IdentifierAuthority)
		else:
			t += '0x' + self.IdentifierAuthority.to_bytes(6, 'big').hex().upper()
		for i in self.SubAuthority:
			t += '-' + str(i)
		return t

	def __eq__(self, other):
		return isinstance(other, SID) and self.to_bytes() == other.to_bytes()

	def __hash__(self):
		return hash(self.to_bytes())

###########
### ACE ###
###########

# https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-dtyp/628ebb1d-c509-4ea0-a10f-77ef97ca4586
class ACEType(enum.IntEnum):
	ACCESS_ALLOWED_ACE_TYPE = 0x00
	ACCESS_DENIED_ACE_TYPE = 0x01
	SYSTEM_AUDIT_ACE_TYPE = 0x02
	ACCESS_ALLOWED_OBJECT_ACE_TYPE = 0x05
	ACCESS_DENIED_OBJECT_ACE_TYPE = 0x06
	SYSTEM_AUDIT_OBJECT_ACE_TYPE = 0x07

SDDL_ACE_TYPE_MAPS = {
	"A": ACEType.ACCESS_ALLOWED_ACE_TYPE,
	"D": ACEType.ACCESS_DENIED_ACE_TYPE,
	"AU": ACEType.SYSTEM_AUDIT_ACE_TYPE,
	"OA": ACEType.ACCESS_ALLOWED_OBJECT_ACE_TYPE,
	"OD": ACEType.ACCESS_DENIED_OBJECT_ACE_TYPE,
	"OU": ACEType.SYSTEM_AUDIT_OBJECT_ACE_TYPE
}
SDDL_ACE_TYPE_MAPS_INV = {v: k for k, v in SDDL_ACE_TYPE_MAPS.items()}

OBJECT_ACE_TYPES = (ACEType.ACCESS_ALLOWED_OBJECT_ACE_TYPE, ACEType.ACCESS_DENIED_OBJECT_ACE_TYPE, ACEType.SYSTEM_AUDIT_OBJECT_ACE_TYPE)
DENY_ACE_TYPES = (ACEType.ACCESS_DENIED_ACE_TYPE, ACEType.ACCESS_DENIED_OBJECT_ACE_TYPE)

class ACEFlags(enum.IntFlag):
	OBJECT_INHERIT_ACE = 0x01
	CONTAINER_INHERIT_ACE = 0x02
	NO_PROPAGATE_INHERIT_ACE = 0x04
	INHERIT_ONLY_ACE = 0x08
	INHERITED_ACE = 0x10
	SUCCESSFUL_ACCESS_ACE_FLAG = 0x40
	FAILED_ACCESS_ACE_FLAG = 0x80

SDDL_ACE_FLAGS_MAPS = {
	"CI": ACEFlags.CONTAINER_INHERIT_ACE,
	"OI": ACEFlags.OBJECT_INHERIT_ACE,
	"NP": ACEFlags.NO_PROPAGATE_INHERIT_ACE,
	"IO": ACEFlags.INHERIT_ONLY_ACE,
	"ID": ACEFlags.INHERITED_ACE,
	"SA": ACEFlags.SUCCESSFUL_ACCESS_ACE_FLAG,
	"FA": ACEFlags.FAILED_ACCESS_ACE_FLAG
}

# Active Directory object access rights
# https://learn.microsoft.com/en-us/openspecs/windows_protocols/ms-adts/990fb975-ab31-4bc1-8b75-5da132cd4584
class ACEAccessRights(enum.IntFlag):
	CREATE_CHILD = 0x00000001
	DELETE_CHILD = 0x00000002
	LIST_CHILDREN = 0x00000004
	SELF = 0x00000008
	READ_PROPERTY = 0x00000010
	WRITE_PROPERTY = 0x00000020
	DELETE_TREE = 0x00000040
	LIST_OBJECT = 0x00000080
	EXTENDED_RIGHTS = 0x00000100
	DELETE = 0x00010000
	READ_CONTROL = 0x00020000
	WRITE_DACL = 0x00040000
	WRITE_OWNER = 0x00080000

# Composite rights first so that to_sddl prefers the short form
SDDL_ACE_ACCESS_RIGHTS_MAPS = {
	"GA": 0x000f01ff,
	"GR": 0x00020094,
	"GW": 0x00020028,
	"GX": 0x00020004,
	"CC": ACEAccessRights.CREATE_CHILD,
	"DC": ACEAccessRights.DELETE_CHILD,
	"LC": ACEAccessRights.LIST_CHILDREN,
	"SW": ACEAccessRights.SELF,
	"RP": ACEAccessRights.READ_PROPERTY,
	"WP": ACEAccessRights.WRITE_PROPERTY,
	"DT": ACEAccessRights.DELETE_TREE,
	"LO": ACEAccessRights.LIST_OBJECT,
	"CR": ACEAccessRights.EXTENDED_RIGHTS,
	"SD": ACEAccessRights.DELETE,
	"RC": ACEAccessRights.READ_CONTROL,
	"WD": ACEAccessRights.WRITE_DACL,
	"WO": ACEAccessRights.WRITE_OWNER
}

def SDDL_TO_ACE_FLAGS(flags_str):
	flags = ACEFlags(0)
	for i in range(0, len(flags_str), 2):
		token = flags_str[i:i+2].upper()
		if token not in SDDL_ACE_FLAGS_MAPS:
			raise ValueError(f"Unknown ACE flag {token}")
		flags |= SDDL_ACE_FLAGS_MAPS[token]
	return flags

def ACE_FLAGS_TO_SDDL(flags):
	return "".join(k for k, v in SDDL_ACE_FLAGS_MAPS.items() if v & flags)

def SDDL_TO_ACE_ACCESS_RIGHTS(rights_str):
	rights_str = rights_str.strip()
	if rights_str.lower().startswith("0x"):
		return int(rights_str, 16)
	mask = 0
	for i in range(0, len(rights_str), 2):
		token = rights_str[i:i+2].upper()
		if token not in SDDL_ACE_ACCESS_RIGHTS_MAPS:
			raise ValueError(f"Unknown access right {token}")
		mask |= int(SDDL_ACE_ACCESS_RIGHTS_MAPS[token])
	return mask

def ACE_ACCESS_RIGHTS_TO_SDDL(mask):
	t = ""
	remaining = mask
	for k, v in SDDL_ACE_ACCESS_RIGHTS_MAPS.items():
		v = int(v)
		if remaining & v == v and v != 0:
			t += k
			remaining &= ~v
	if remaining != 0:
		return "0x{:x}".format(mask)
	return t

# schemaIDGUID / rightsGUID values commonly used when delegating control over OUs
# https://learn.microsoft.com/en-us/windows/win32/adschema/
OBJECT_TYPE_NAMES = {
	"user": "bf967aba-0de6-11d0-a285-00aa003049e2",
	"group": "bf967a9c-0de6-11d0-a285-00aa003049e2",
	"computer": "bf967a86-0de6-11d0-a285-00aa003049e2",
	"organizationalUnit": "bf967aa5-0de6-11d0-a285-00aa003049e2",
	"member": "bf9679c0-0de6-11d0-a285-00aa003049e2",
	"pwdLastSet": "bf967a0a-0de6-11d0-a285-00aa003049e2",
	"lockoutTime": "28630ebf-41d5-11d1-a9c1-0000f80367c1",
	"userAccountControl": "bf967a68-0de6-11d0-a285-00aa003049e2",
	"gPLink": "f30e3bbe-9ff0-11d1-b603-0000f80367c1",
	"gPOptions": "f30e3bbf-9ff0-11d1-b603-0000f80367c1",
	"User-Force-Change-Password": "00299570-246d-11d0-a768-00aa006e0529"
}
OBJECT_TYPE_NAMES_LOWER = {k.lower(): v for k, v in OBJECT_TYPE_NAMES.items()}

def resolveObjectType(value):
	if value == None or value.strip() == "":
		return None
	value = value.strip()
	if value.lower() in OBJECT_TYPE_NAMES_LOWER:
		return uuid.UUID(OBJECT_TYPE_NAMES_LOWER[value.lower()])
	return uuid.UUID(value.strip("{}"))

# https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-dtyp/c79a383c-2b3f-4655-abe7-dcbb7ce0cfbe
class ACE_OBJECT_PRESENCE(enum.IntFlag):
	NONE = 0x00000000
	ACE_OBJECT_TYPE_PRESENT = 0x00000001
	ACE_INHERITED_OBJECT_TYPE_PRESENT = 0x00000002

class ACE:
	"""Access control entry of the allowed/denied/audit families.

	Object ACEs carry optional ObjectType and InheritedObjectType GUIDs, the
	others only a mask and a trustee SID. Any other ACE type is kept as
	opaque bytes so that a DACL read from the directory is written back
	unchanged.
	"""

	def __init__(self, aceType = ACEType.ACCESS_ALLOWED_ACE_TYPE, aceFlags = 0, mask = 0, sid = None, objectType = None, inheritedObjectType = None):
		self.AceType = aceType
		self.AceFlags = ACEFlags(aceFlags)
		self.Mask = mask
		self.Sid = sid
		self.ObjectType = objectType
		self.InheritedObjectType = inheritedObjectType
		self.raw = None

	@staticmethod
	def from_bytes(data):
		return ACE.from_buffer(io.BytesIO(data))

	@staticmethod
	def from_buffer(buff):
		aceType = int.from_bytes(buff.read(1), 'little', signed = False)
		aceFlags = int.from_bytes(buff.read(1), 'little', signed = False)
		aceSize = int.from_bytes(buff.read(2), 'little', signed = False)
		body = io.BytesIO(buff.read(aceSize - 4))

		ace = ACE(aceFlags = aceFlags)
		if aceType not in ACEType._value2member_map_:
			ace.AceType = aceType
			ace.raw = body.getvalue()
			return ace

		ace.AceType = ACEType(aceType)
		ace.Mask = int.from_bytes(body.read(4), 'little', signed = False)
		if ace.AceType in OBJECT_ACE_TYPES:
			flags = int.from_bytes(body.read(4), 'little', signed = False)
			if flags & ACE_OBJECT_PRESENCE.ACE_OBJECT_TYPE_PRESENT:
				ace.ObjectType = uuid.UUID(bytes_le = body.read(16))
			if flags & ACE_OBJECT_PRESENCE.ACE_INHERITED_OBJECT_TYPE_PRESENT:
				ace.InheritedObjectType = uuid.UUID(bytes_le = body.read(16))
		ace.Sid = SID.from_buffer(body)
		return ace

	def to_bytes(self):
		if self.raw != None:
			t = self.raw
			aceType = int(self.AceType)
		else:
			t = self.Mask.to_bytes(4, 'little', signed = False)
			if self.AceType in OBJECT_ACE_TYPES:
				flags = ACE_OBJECT_PRESENCE.NONE
				if self.ObjectType != None:
					flags |= ACE_OBJECT_PRESENCE.ACE_OBJECT_TYPE_PRESENT
				if self.InheritedObjectType != None:
					flags |= ACE_OBJECT_PRESENCE.ACE_INHERITED_OBJECT_TYPE_PRESENT
				t += int(flags).to_bytes(4, 'little', signed = False)
				if self.ObjectType != None:
					t += self.ObjectType.bytes_le
				if self.InheritedObjectType != None:
					t += self.InheritedObjectType.bytes_le
			t += self.Sid.to_bytes()
			if len(t) % 4 != 0:
				t += b'\x00' * (4 - len(t) % 4)
			aceType = int(self.AceType)
		aceSize = 4 + len(t)
		return aceType.to_bytes(1, 'little') + int(self.AceFlags).to_bytes(1, 'little') + aceSize.to_bytes(2, 'little') + t

	@staticmethod
	def from_sddl(sddl, domain_sid = None):
		sddl = sddl.strip()
		if sddl.startswith('('):
			sddl = sddl[1:]
		if sddl.endswith(')'):
			sddl = sddl[:-1]
		fields = sddl.split(';')
		if len(fields) != 6:
			raise ValueError(f"Malformed ACE string: {sddl}")
		ace_type, ace_flags, rights, object_guid, inherit_object_guid, account_sid = fields
		if ace_type.upper() not in SDDL_ACE_TYPE_MAPS:
			raise ValueError(f"Unsupported ACE type {ace_type}")

		ace = ACE(SDDL_ACE_TYPE_MAPS[ace_type.upper()], SDDL_TO_ACE_FLAGS(ace_flags), SDDL_TO_ACE_ACCESS_RIGHTS(rights), SID.from_sddl(account_sid, domain_sid))
		if object_guid != '':
			ace.ObjectType = uuid.UUID(object_guid)
		if inherit_object_guid != '':
			ace.InheritedObjectType = uuid.UUID(inherit_object_guid)
		return ace

	def to_sddl(self):
		if self.raw != None:
			return "(0x{:02x};{};{})".format(self.AceType, ACE_FLAGS_TO_SDDL(self.AceFlags), self.raw.hex())
		# ace_type;ace_flags;rights;object_guid;inherit_object_guid;account_sid
		return '(%s;%s;%s;%s;%s;%s)' % (
			SDDL_ACE_TYPE_MAPS_INV[self.AceType],
			ACE_FLAGS_TO_SDDL(self.AceFlags),
			ACE_ACCESS_RIGHTS_TO_SDDL(self.Mask),
			str(self.ObjectType) if self.ObjectType != None else '',
			str(self.InheritedObjectType) if self.InheritedObjectType != None else '',
			self.Sid.to_sddl()
		)

	def isInherited(self):
		return bool(self.AceFlags & ACEFlags.INHERITED_ACE)

	def covers(self, other):
		"""True if this explicit ACE already grants (or denies) everything other does."""
		if self.raw != None or other.raw != None or self.isInherited():
			return False
		return (self.AceType == other.AceType
			and self.Sid == other.Sid
			and self.ObjectType == other.ObjectType
			and self.InheritedObjectType == other.InheritedObjectType
			and (self.AceFlags & ~ACEFlags.INHERITED_ACE) == (other.AceFlags & ~ACEFlags.INHERITED_ACE)
			and (self.Mask & other.Mask) == other.Mask)

###########
### ACL ###
###########

# https://learn.microsoft.com/en-us/openspecs/windows_protocols/ms-dtyp/20233ed8-a6c6-4097-aafa-dd545ed24428
ACL_REVISION = 0x02
ACL_REVISION_DS = 0x04

class ACL:
	def __init__(self, revision = ACL_REVISION):
		self.AclRevision = revision
		self.aces = []

	@staticmethod
	def from_buffer(buff):
		acl = ACL()
		acl.AclRevision = int.from_bytes(buff.read(1), 'little', signed = False)
		buff.read(1) # Sbz1
		buff.read(2) # AclSize
		count = int.from_bytes(buff.read(2), 'little', signed = False)
		buff.read(2) # Sbz2
		for _ in range(count):
			acl.aces.append(ACE.from_buffer(buff))
		return acl

	def to_bytes(self):
		data = b"".join(ace.to_bytes() for ace in self.aces)
		if any(ace.AceType in OBJECT_ACE_TYPES for ace in self.aces):
			self.AclRevision = ACL_REVISION_DS
		t = self.AclRevision.to_bytes(1, 'little')
		t += b'\x00'
		t += (8 + len(data)).to_bytes(2, 'little')
		t += len(self.aces).to_bytes(2, 'little')
		t += b'\x00\x00'
		return t + data

	def to_sddl(self):
		return "".join(ace.to_sddl() for ace in self.aces)

	@staticmethod
	def from_sddl(sddl_str, domain_sid = None):
		acl = ACL()
		sddl_str = sddl_str.strip()
		if sddl_str == "":
			return acl
		for ace_sddl in sddl_str[1:-1].split(')('):
			acl.aces.append(ACE.from_sddl(ace_sddl, domain_sid))
		return acl

	def find(self, ace):
		for existing in self.aces:
			if existing.covers(ace):
				return existing
		return None

	def insert(self, ace):
		"""Insert an explicit ACE at its canonical position: deny ACEs first, then allow ACEs, then inherited ACEs."""
		if ace.AceType in DENY_ACE_TYPES:
			self.aces.insert(0, ace)
			return
		for i, existing in enumerate(self.aces):
			if existing.isInherited():
				self.aces.insert(i, ace)
				return
		self.aces.append(ace)

###########################
### Security Descriptor ###
###########################

class SE_CONTROL(enum.IntFlag):
	SE_OWNER_DEFAULTED = 0x0001
	SE_GROUP_DEFAULTED = 0x0002
	SE_DACL_PRESENT = 0x0004
	SE_DACL_DEFAULTED = 0x0008
	SE_SACL_PRESENT = 0x0010
	SE_DACL_AUTO_INHERIT_REQ = 0x0100
	SE_DACL_AUTO_INHERITED = 0x0400
	SE_DACL_PROTECTED = 0x1000
	SE_SELF_RELATIVE = 0x8000

SDDL_DACL_CONTROL_FLAGS = {
	"P": SE_CONTROL.SE_DACL_PROTECTED,
	"AR": SE_CONTROL.SE_DACL_AUTO_INHERIT_REQ,
	"AI": SE_CONTROL.SE_DACL_AUTO_INHERITED
}

# https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-dtyp/7d4dac05-9cef-4563-a058-f108abecce1d
class SECURITY_DESCRIPTOR:
	def __init__(self):
		self.Revision = 1
		self.Control = SE_CONTROL.SE_SELF_RELATIVE
		self.Owner = None
		self.Group = None
		self.Sacl = None
		self.Dacl = None

	@staticmethod
	def from_bytes(data):
		buff = io.BytesIO(data)
		sd = SECURITY_DESCRIPTOR()
		sd.Revision = int.from_bytes(buff.read(1), 'little', signed = False)
		buff.read(1) # Sbz1
		sd.Control = SE_CONTROL(int.from_bytes(buff.read(2), 'little', signed = False))
		OffsetOwner = int.from_bytes(buff.read(4), 'little', signed = False)
		OffsetGroup = int.from_bytes(buff.read(4), 'little', signed = False)
		OffsetSacl = int.from_bytes(buff.read(4), 'little', signed = False)
		OffsetDacl = int.from_bytes(buff.read(4), 'little', signed = False)

		if OffsetOwner > 0:
			buff.seek(OffsetOwner)
			sd.Owner = SID.from_buffer(buff)
		if OffsetGroup > 0:
			buff.seek(OffsetGroup)
			sd.Group = SID.from_buffer(buff)
		if OffsetSacl > 0:
			buff.seek(OffsetSacl)
			sd.Sacl = ACL.from_buffer(buff)
		if OffsetDacl > 0:
			buff.seek(OffsetDacl)
			sd.Dacl = ACL.from_buffer(buff)
		return sd

	def to_bytes(self):
		data = b""
		OffsetOwner = OffsetGroup = OffsetSacl = OffsetDacl = 0
		control = self.Control | SE_CONTROL.SE_SELF_RELATIVE
		if self.Owner != None:
			OffsetOwner = 20 + len(data)
			data += self.Owner.to_bytes()
		if self.Group != None:
			OffsetGroup = 20 + len(data)
			data += self.Group.to_bytes()
		if self.Sacl != None:
			OffsetSacl = 20 + len(data)
			data += self.Sacl.to_bytes()
			control |= SE_CONTROL.SE_SACL_PRESENT
		if self.Dacl != None:
			OffsetDacl = 20 + len(data)
			data += self.Dacl.to_bytes()
			control |= SE_CONTROL.SE_DACL_PRESENT

		t = self.Revision.to_bytes(1, 'little')
		t += b'\x00'
		t += int(control).to_bytes(2, 'little')
		for offset in (OffsetOwner, OffsetGroup, OffsetSacl, OffsetDacl):
			t += offset.to_bytes(4, 'little')
		return t + data

	def to_sddl(self):
		t = ''
		if self.Owner != None:
			t += 'O:' + self.Owner.to_sddl()
		if self.Group != None:
			t += 'G:' + self.Group.to_sddl()
		if self.Dacl != None:
			flags = "".join(k for k, v in SDDL_DACL_CONTROL_FLAGS.items() if v & self.Control)
			t += 'D:' + flags + self.Dacl.to_sddl()
		return t

	@staticmethod
	def from_sddl(sddl, domain_sid = None):
		"""Parse owner, group and DACL parts of an SDDL string (SACLs are not supported)."""
		sd = SECURITY_DESCRIPTOR()
		parts = {}
		key = None
		i = 0
		depth = 0
		while i < len(sddl):
			c = sddl[i]
			if depth == 0 and c in "OGDS" and i + 1 < len(sddl) and sddl[i+1] == ':':
				key = c
				parts[key] = ""
				i += 2
				continue
			if c == '(':
				depth += 1
			elif c == ')':
				depth -= 1
			if key == None:
				raise ValueError(f"Malformed SDDL string: {sddl}")
			parts[key] += c
			i += 1

		if 'S' in parts:
			raise ValueError("SACL parts are not supported")
		if 'O' in parts:
			sd.Owner = SID.from_sddl(parts['O'], domain_sid)
		if 'G' in parts:
			sd.Group = SID.from_sddl(parts['G'], domain_sid)
		if 'D' in parts:
			dacl = parts['D']
			m = dacl.find('(')
			flags = dacl if m == -1 else dacl[:m]
			for k, v in SDDL_DACL_CONTROL_FLAGS.items():
				if k in flags:
					sd.Control |= v
					flags = flags.replace(k, '')
			sd.Dacl = ACL.from_sddl(dacl[m:] if m != -1 else "", domain_sid)
			sd.Control |= SE_CONTROL.SE_DACL_PRESENT
		return sd

############################
### nTSecurityDescriptor ###
############################

DACL_SECURITY_INFORMATION = 0x04

def getDomainSID(conn, baseDN):
	entry = findOne(conn, baseDN, "(objectClass=*)", attributes = ["objectSid"], scope = BASE)
	if entry == None:
		return None
	value = rawValue(entry, "objectSid")
	if value == None:
		return None
	return str(SID.from_bytes(value))

def resolveTrustee(conn, baseDN, trustee, domain_sid = None):
	trustee = trustee.strip()
	if trustee.upper().startswith("S-1-"):
		return SID.from_string(trustee)
	if len(trustee) == 2 and trustee.upper() in SDDL_NAME_VAL_MAPS:
		return SID.from_sddl(trustee.upper(), domain_sid)
	if "=" in trustee:
		entry = findOne(conn, trustee, "(objectClass=*)", attributes = ["objectSid"], scope = BASE)
	else:
		entry = findOne(conn, baseDN, accountFilter(trustee), attributes = ["objectSid"])
	if entry == None or rawValue(entry, "objectSid") == None:
		raise ProvisioningError(f"Trustee {trustee} not found")
	return SID.from_bytes(rawValue(entry, "objectSid"))

def getSecurityDescriptor(conn, dn):
	entry = findOne(conn, dn, "(objectClass=*)", attributes = ["nTSecurityDescriptor"], scope = BASE,
					controls = security_descriptor_control(sdflags = DACL_SECURITY_INFORMATION))
	if entry == None:
		raise ProvisioningError(f"{dn} not found")
	data = rawValue(entry, "nTSecurityDescriptor")
	if data == None:
		raise ProvisioningError(f"Cannot read nTSecurityDescriptor of {dn}")
	return SECURITY_DESCRIPTOR.from_bytes(data)

def setSecurityDescriptor(conn, dn, sd):
	succeeded = conn.modify(dn, {"nTSecurityDescriptor": [(MODIFY_REPLACE, [sd.to_bytes()])]},
							controls = security_descriptor_control(sdflags = DACL_SECURITY_INFORMATION))
	checkResult(conn, succeeded, f"Writing DACL of {dn}")

def addACE(conn, dn, ace, whatIf = False):
	"""Add ace to the DACL of dn unless an explicit ACE already covers it.

	Returns True when the DACL was (or would be) modified.
	"""
	sd = getSecurityDescriptor(conn, dn)
	if sd.Dacl == None:
		sd.Dacl = ACL()
	if sd.Dacl.find(ace) != None:
		return False
	if whatIf:
		return True
	sd.Dacl.insert(ace)
	setSecurityDescriptor(conn, dn, sd)
	return True

# Deny Everyone "Delete" and "Delete subtree", as set by "Protect object from accidental deletion"
DELETION_PROTECTION_SDDL = "(D;;SDDT;;;WD)"

def protectFromDeletion(conn, dn, whatIf = False):
	return addACE(conn, dn, ACE.from_sddl(DELETION_PROTECTION_SDDL), whatIf)

def buildACE(conn, baseDN, record, domain_sid = None):
	access = record.get("access", "").strip().lower() or "allow"
	if access not in ("allow", "deny"):
		raise ValueError(f"access must be Allow or Deny, not {record['access']}")
	objectType = resolveObjectType(record.get("objectType"))
	inheritedObjectType = resolveObjectType(record.get("inheritedObjectType"))
	if objectType != None or inheritedObjectType != None:
		aceType = ACEType.ACCESS_DENIED_OBJECT_ACE_TYPE if access == "deny" else ACEType.ACCESS_ALLOWED_OBJECT_ACE_TYPE
	else:
		aceType = ACEType.ACCESS_DENIED_ACE_TYPE if access == "deny" else ACEType.ACCESS_ALLOWED_ACE_TYPE

	flags = ACEFlags(0)
	if parseBool(record.get("inherit"), default = False) or inheritedObjectType != None:
		flags |= ACEFlags.CONTAINER_INHERIT_ACE
	if inheritedObjectType != None:
		# Only applies to descendants of the given class
		flags |= ACEFlags.INHERIT_ONLY_ACE

	mask = SDDL_TO_ACE_ACCESS_RIGHTS(record["rights"])
	sid = resolveTrustee(conn, baseDN, record["trustee"], domain_sid)
	return ACE(aceType, flags, mask, sid, objectType, inheritedObjectType)

def assignACLs(conn, domain, records, whatIf = False):
	banner("Assigning ACLs")

	baseDN = domainToDN(domain)
	domain_sid = getDomainSID(conn, baseDN)
	summary = Summary()
	for record in records:
		line = record.get("_line", "?")
		target = qualifyDN(record["target"], baseDN)
		try:
			ace = buildACE(conn, baseDN, record, domain_sid)
			if addACE(conn, target, ace, whatIf):
				if whatIf:
					summary.created("[WhatIf] Would add %s to %s", ace.to_sddl(), target)
				else:
					summary.created("ACE %s added to %s", ace.to_sddl(), target)
			else:
				summary.existing("ACE %s already present on %s", ace.to_sddl(), target)
		except (LDAPException, ProvisioningError, ValueError, KeyError) as e:
			summary.failed("Line %s: cannot assign ACL on %s: %s", line, target, e)

	summary.report("ACLs")
	return summary
