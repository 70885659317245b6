#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# SPDX-License-Identifier: MIT

"""
dmfs.py - DMFS image model, encoder and reader

A DMFS image bundles the boot-time payload of the hypervisor (boot banners,
system services, guest OS kernels) into one blob the bootloader can walk
without a general-purpose parser.

Binary format (all integers u32 little-endian):

    Preamble (16 bytes):
        [0..4]   magic "DMFS"
        [4..8]   version = 1
        [8..12]  object count
        [12..16] reserved = 0

    Directory (count * 36 bytes, in manifest order):
        [0..4]   kind (1 = boot message, 2 = system service, 3 = guest OS)
        [4..12]  name_off, name_len
        [12..20] desc_off, desc_len
        [20..28] props_off, props_len (props_off = 0xFFFFFFFF when absent)
        [28..36] data_off, data_len

    Data region:
        For each object: name, description, properties, payload.
        Offsets in the directory are relative to the start of this region.
        Properties are stored as a run of u32-length-prefixed UTF-8 strings.
"""

import enum
import struct

DMFS_MAGIC = b'DMFS'
DMFS_VERSION = 1

PREAMBLE_FORMAT = '<4sIII'
PREAMBLE_SIZE = struct.calcsize(PREAMBLE_FORMAT)
RECORD_FORMAT = '<IIIIIIIII'
RECORD_SIZE = struct.calcsize(RECORD_FORMAT)

U32_MAX = 0xFFFFFFFF
NO_PROPERTIES = U32_MAX


class DmfsError(Exception):
    """Raised when an image can't be encoded or decoded."""


class ManifestObjectType(enum.IntEnum):
    BootMsg = 1
    SystemService = 2
    GuestOS = 3


class ManifestObjectData:
    """Base of the payload variants. Every variant must produce its bytes."""

    def as_bytes(self) -> bytes:
        raise NotImplementedError


class Bytes(ManifestObjectData):
    """Payload held in memory."""

    def __init__(self, payload):
        self._payload = bytes(payload)

    def as_bytes(self) -> bytes:
        return self._payload

    def __len__(self):
        return len(self._payload)

    def __eq__(self, other):
        return isinstance(other, Bytes) and other._payload == self._payload

    def __repr__(self):
        return f"Bytes({len(self._payload)} bytes)"


class ManifestObject:
    """One entry of the image. Fields are fixed at construction."""

    def __init__(self, kind, name, description, data, properties=None):
        if not isinstance(data, ManifestObjectData):
            data = Bytes(data)
        self._kind = ManifestObjectType(kind)
        self._name = str(name)
        self._description = str(description)
        self._data = data
        # only services carry properties; None means "absent", not "empty"
        self._properties = frozenset(properties) if properties is not None else None

    @property
    def kind(self) -> ManifestObjectType:
        return self._kind

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def data(self) -> ManifestObjectData:
        return self._data

    @property
    def properties(self):
        return self._properties

    def __eq__(self, other):
        if not isinstance(other, ManifestObject):
            return NotImplemented
        return (self._kind == other._kind and self._name == other._name
                and self._description == other._description
                and self._data.as_bytes() == other._data.as_bytes()
                and self._properties == other._properties)

    def __repr__(self):
        return (f"ManifestObject({self._kind.name}, {self._name!r}, "
                f"{len(self._data.as_bytes())} bytes)")


def encode_properties(properties) -> bytes:
    """Serialize a property set as sorted, u32-length-prefixed strings."""
    out = bytearray()
    for prop in sorted(properties):
        raw = prop.encode('utf-8')
        out += struct.pack('<I', check_u32(len(raw), f"property {prop!r} length"))
        out += raw
    return bytes(out)


def decode_properties(raw: bytes) -> frozenset:
    props = set()
    pos = 0
    while pos < len(raw):
        if pos + 4 > len(raw):
            raise DmfsError("Truncated property length prefix")
        (length,) = struct.unpack_from('<I', raw, pos)
        pos += 4
        if pos + length > len(raw):
            raise DmfsError("Property string runs past end of property list")
        props.add(decode_text(raw[pos:pos + length], 'Property'))
        pos += length
    return frozenset(props)


def decode_text(raw: bytes, what: str) -> str:
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DmfsError(f"{what} isn't valid UTF-8: {e}") from e


def check_u32(value: int, what: str) -> int:
    if value < 0 or value > U32_MAX:
        raise DmfsError(f"{what} ({value}) doesn't fit in a 32-bit image field")
    return value


class Manifest:
    """Ordered, append-only collection of objects destined for an image."""

    def __init__(self):
        self._objects = []

    def add(self, obj: ManifestObject):
        self._objects.append(obj)

    def __len__(self):
        return len(self._objects)

    # read-only snapshot; entries are never removed or reordered
    def __iter__(self):
        return iter(tuple(self._objects))

    def to_image(self) -> bytes:
        """
        Render every object, in insertion order, into one DMFS image.
        Raises DmfsError if an offset, length or the object count won't fit
        in a u32. Nothing is returned on failure.
        """
        count = check_u32(len(self._objects), "Object count")

        directory = bytearray()
        data = bytearray()

        def place(blob, what):
            off = check_u32(len(data), f"{what} offset")
            length = check_u32(len(blob), f"{what} length")
            check_u32(off + length, f"{what} end")
            data.extend(blob)
            return off, length

        for obj in self._objects:
            name_off, name_len = place(obj.name.encode('utf-8'), f"Name of {obj.name!r}")
            desc_off, desc_len = place(obj.description.encode('utf-8'),
                                       f"Description of {obj.name!r}")
            if obj.properties is None:
                props_off, props_len = NO_PROPERTIES, 0
            else:
                props_off, props_len = place(encode_properties(obj.properties),
                                             f"Properties of {obj.name!r}")
                if props_off == NO_PROPERTIES:
                    raise DmfsError(f"Properties of {obj.name!r} land on the absent marker offset")
            data_off, data_len = place(obj.data.as_bytes(), f"Payload of {obj.name!r}")

            directory += struct.pack(RECORD_FORMAT, int(obj.kind),
                                     name_off, name_len, desc_off, desc_len,
                                     props_off, props_len, data_off, data_len)

        preamble = struct.pack(PREAMBLE_FORMAT, DMFS_MAGIC, DMFS_VERSION, count, 0)
        return preamble + bytes(directory) + bytes(data)


def read_image(blob) -> list:
    """Decode a DMFS image back into its list of ManifestObjects."""
    blob = bytes(blob)
    if len(blob) < PREAMBLE_SIZE:
        raise DmfsError(f"Image too short for preamble ({len(blob)} bytes)")

    magic, version, count, _reserved = struct.unpack_from(PREAMBLE_FORMAT, blob, 0)
    if magic != DMFS_MAGIC:
        raise DmfsError(f"Bad magic {magic!r}, expected {DMFS_MAGIC!r}")
    if version != DMFS_VERSION:
        raise DmfsError(f"Unsupported DMFS version {version}")

    data_start = PREAMBLE_SIZE + count * RECORD_SIZE
    if data_start > len(blob):
        raise DmfsError(f"Image truncated: directory of {count} records needs "
                        f"{data_start} bytes, have {len(blob)}")
    data = blob[data_start:]

    def region(off, length, what):
        if off + length > len(data):
            raise DmfsError(f"{what} at {off}+{length} lies outside the data region")
        return data[off:off + length]

    objects = []
    for i in range(count):
        (kind, name_off, name_len, desc_off, desc_len,
         props_off, props_len, data_off, data_len) = struct.unpack_from(
            RECORD_FORMAT, blob, PREAMBLE_SIZE + i * RECORD_SIZE)

        try:
            kind = ManifestObjectType(kind)
        except ValueError:
            raise DmfsError(f"Object {i} has unknown kind tag {kind}") from None

        name = decode_text(region(name_off, name_len, f"Object {i} name"), f"Object {i} name")
        description = decode_text(region(desc_off, desc_len, f"Object {i} description"),
                                  f"Object {i} description")
        if props_off == NO_PROPERTIES:
            properties = None
        else:
            properties = decode_properties(region(props_off, props_len, f"Object {i} properties"))
        payload = region(data_off, data_len, f"Object {i} payload")

        objects.append(ManifestObject(kind, name, description, Bytes(payload), properties))

    return objects
