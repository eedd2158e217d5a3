#!/usr/bin/python3

import ipaddress, math, struct

from ldap3.core.exceptions import LDAPException

from ADCommon import logger, banner, Summary, ProvisioningError, domainToDN, objectExists, checkResult

#########################
### Reverse zone name ###
#########################

def _ipv4ZoneName(network, octets):
	labels = str(network.network_address).split(".")[:octets]
	return ".".join(reversed(labels)) + ".in-addr.arpa"

def _ipv6ZoneName(network, nibbles):
	labels = network.network_address.exploded.replace(":", "")[:nibbles]
	return ".".join(reversed(labels)) + ".ip6.arpa"

def reverseZoneNames(cidr):
	"""Reverse lookup zone name(s) covering a network given in CIDR notation.

	Zones are delegated on octet (IPv4) or nibble (IPv6) boundaries, so a
	prefix between two boundaries yields every zone at the next boundary
	that the network covers, e.g. 10.16.0.0/12 gives 16.10.in-addr.arpa up
	to 31.10.in-addr.arpa. An IPv4 prefix longer than /24 maps to its
	enclosing /24 zone. Host bits are ignored.
	"""
	network = ipaddress.ip_network(str(cidr).strip(), strict = False)
	if network.prefixlen == 0:
		raise ValueError(f"{cidr}: refusing to derive a reverse zone for the whole address space")

	if network.version == 4:
		step, width, naming = 8, 24, _ipv4ZoneName
	else:
		step, width, naming = 4, 128, _ipv6ZoneName

	if network.prefixlen > width:
		network = network.supernet(new_prefix = width)
	boundary = int(math.ceil(network.prefixlen / step)) * step
	if boundary == network.prefixlen:
		subnets = [network]
	else:
		subnets = network.subnets(new_prefix = boundary)
	return [naming(subnet, boundary // step) for subnet in subnets]

#################
### dnsRecord ###
#################

# https://learn.microsoft.com/en-us/openspecs/windows_protocols/ms-dnsp/ac793981-1c60-43b8-be59-cdbb5c4ecb8a
DNS_TYPE_NS = 0x0002
DNS_TYPE_SOA = 0x0006
RANK_ZONE = 0xF0

DEFAULT_TTL = 3600
DEFAULT_REFRESH = 900
DEFAULT_RETRY = 600
DEFAULT_EXPIRE = 86400
DEFAULT_MINIMUM_TTL = 3600

def encodeCountName(fqdn):
	"""DNS_COUNT_NAME: length, label count, then length-prefixed labels and a terminating zero."""
	labels = [label for label in fqdn.strip(".").split(".") if label != ""]
	raw = b""
	for label in labels:
		label = label.encode("idna") if not label.isascii() else label.encode()
		if len(label) > 63:
			raise ValueError(f"DNS label too long in {fqdn}")
		raw += struct.pack("B", len(label)) + label
	raw += b"\x00"
	return struct.pack("BB", len(raw), len(labels)) + raw

def decodeCountName(data):
	length, count = struct.unpack("BB", data[:2])
	raw = data[2:2 + length]
	labels = []
	i = 0
	for _ in range(count):
		size = raw[i]
		labels.append(raw[i + 1:i + 1 + size].decode())
		i += size + 1
	return ".".join(labels) + "."

class DNS_RECORD:
	def __init__(self, type, data, serial = 1, ttl = DEFAULT_TTL, rank = RANK_ZONE):
		self.Type = type
		self.Data = data
		self.Serial = serial
		self.TtlSeconds = ttl
		self.Rank = rank

	def to_bytes(self):
		# DataLength, Type, Version, Rank, Flags, Serial, TtlSeconds (big-endian), Reserved, TimeStamp
		header = struct.pack("<HHBBHL", len(self.Data), self.Type, 5, self.Rank, 0, self.Serial)
		header += struct.pack(">L", self.TtlSeconds)
		header += struct.pack("<LL", 0, 0)
		return header + self.Data

	@staticmethod
	def from_bytes(data):
		length, type, _, rank, _, serial = struct.unpack("<HHBBHL", data[:12])
		ttl = struct.unpack(">L", data[12:16])[0]
		return DNS_RECORD(type, data[24:24 + length], serial, ttl, rank)

def buildSOARecord(primaryServer, adminEmail, serial = 1, ttl = DEFAULT_TTL):
	data = struct.pack(">LLLLL", serial, DEFAULT_REFRESH, DEFAULT_RETRY, DEFAULT_EXPIRE, DEFAULT_MINIMUM_TTL)
	data += encodeCountName(primaryServer)
	data += encodeCountName(adminEmail)
	return DNS_RECORD(DNS_TYPE_SOA, data, serial, ttl).to_bytes()

def buildNSRecord(nameServer, serial = 1, ttl = DEFAULT_TTL):
	return DNS_RECORD(DNS_TYPE_NS, encodeCountName(nameServer), serial, ttl).to_bytes()

###################
### dnsProperty ###
###################

# https://learn.microsoft.com/en-us/openspecs/windows_protocols/ms-dnsp/445c7843-e4a1-4222-8c0f-630c230a4c80
DSPROPERTY_ZONE_TYPE = 0x00000001
DSPROPERTY_ZONE_ALLOW_UPDATE = 0x00000002
DNS_ZONE_TYPE_PRIMARY = 0x00000001
ZONE_UPDATE_SECURE = 0x02

def encodeDnsProperty(id, data):
	return struct.pack("<LLLLL", len(data), 1, 0, 1, id) + data + b"\x00"

################
### dnsZones ###
################

DNS_PARTITIONS = {
	"domain": "CN=MicrosoftDNS,DC=DomainDnsZones,{base}",
	"forest": "CN=MicrosoftDNS,DC=ForestDnsZones,{base}",
	"legacy": "CN=MicrosoftDNS,CN=System,{base}"
}

def zoneDN(zone, baseDN, partition = "domain"):
	partition = (partition or "domain").strip().lower()
	if partition not in DNS_PARTITIONS:
		raise ValueError(f"Unknown DNS partition {partition}, expected one of {', '.join(DNS_PARTITIONS)}")
	return f"DC={zone}," + DNS_PARTITIONS[partition].format(base = baseDN)

def defaultPrimaryServer(conn, domain):
	info = getattr(conn.server, "info", None)
	if info != None and info.other.get("dnsHostName"):
		return info.other["dnsHostName"][0]
	return domain

def createZoneApex(conn, zone, dn, primaryServer, domain):
	records = [
		buildSOARecord(primaryServer, f"hostmaster.{domain}"),
		buildNSRecord(primaryServer)
	]
	succeeded = conn.add(f"DC=@,{dn}", ["top", "dnsNode"], {"dnsRecord": records})
	checkResult(conn, succeeded, f"Creating zone apex of {zone}")

def createZone(conn, zone, dn, primaryServer, domain):
	attributes = {
		"dNSProperty": [
			encodeDnsProperty(DSPROPERTY_ZONE_TYPE, struct.pack("<L", DNS_ZONE_TYPE_PRIMARY)),
			encodeDnsProperty(DSPROPERTY_ZONE_ALLOW_UPDATE, struct.pack("B", ZONE_UPDATE_SECURE))
		]
	}
	succeeded = conn.add(dn, ["top", "dnsZone"], attributes)
	checkResult(conn, succeeded, f"Creating zone {zone}")

	try:
		createZoneApex(conn, zone, dn, primaryServer, domain)
	except LDAPException as e:
		raise ProvisioningError(f"zone {zone} created without its SOA and NS records, the next run adds them: {e}") from e

def createReverseZones(conn, domain, records, primaryServer = None, whatIf = False):
	banner("Creating reverse lookup zones")

	baseDN = domainToDN(domain)
	summary = Summary()
	for record in records:
		line = record.get("_line", "?")
		network = record["network"]
		try:
			zones = reverseZoneNames(network)
		except ValueError as e:
			summary.failed("Line %s: invalid network %s: %s", line, network, e)
			continue
		logger.debug("Network %s maps to %s", network, ", ".join(zones))

		server = record.get("primaryServer") or primaryServer or defaultPrimaryServer(conn, domain)
		for zone in zones:
			try:
				dn = zoneDN(zone, baseDN, record.get("partition"))
				if objectExists(conn, dn):
					if objectExists(conn, f"DC=@,{dn}"):
						summary.existing("Zone %s already exists", zone)
					elif whatIf:
						summary.created("[WhatIf] Would add the missing SOA and NS records of zone %s", zone)
					else:
						logger.warning("Zone %s exists without its apex", zone)
						createZoneApex(conn, zone, dn, server, domain)
						summary.created("Zone %s apex restored", zone)
				elif whatIf:
					summary.created("[WhatIf] Would create zone %s (%s)", zone, network)
				else:
					createZone(conn, zone, dn, server, domain)
					summary.created("Zone %s created for %s", zone, network)
			except (LDAPException, ProvisioningError, ValueError) as e:
				summary.failed("Line %s: cannot create zone %s: %s", line, zone, e)

	summary.report("Reverse lookup zones")
	return summary
