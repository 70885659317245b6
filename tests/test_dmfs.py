import struct

import pytest

import dmfs
from dmfs import (
    Bytes,
    DmfsError,
    Manifest,
    ManifestObject,
    ManifestObjectType,
    read_image,
)


def _manifest(*objects):
    manifest = Manifest()
    for obj in objects:
        manifest.add(obj)
    return manifest


def _directory(image):
    magic, version, count, _ = struct.unpack_from(dmfs.PREAMBLE_FORMAT, image, 0)
    assert magic == b'DMFS'
    assert version == dmfs.DMFS_VERSION
    return [
        struct.unpack_from(dmfs.RECORD_FORMAT, image, dmfs.PREAMBLE_SIZE + i * dmfs.RECORD_SIZE)
        for i in range(count)
    ]


BANNER = ManifestObject(ManifestObjectType.BootMsg, "riscv", "Boot banner text for riscv systems",
                        b"hello riscv\n")
SERVICE = ManifestObject(ManifestObjectType.SystemService, "gooey", "Console interface",
                         b"\x7fELF\x02\x01" + bytes(64),
                         {"service_console", "console_write", "auto_crash_restart"})
GUEST = ManifestObject(ManifestObjectType.GuestOS, "riscv64-linux-busybox", "Busybox",
                       bytes(range(256)) * 4)


def test_empty_manifest_is_just_a_preamble():
    image = Manifest().to_image()
    assert len(image) == dmfs.PREAMBLE_SIZE
    assert _directory(image) == []


def test_directory_has_one_record_per_object_in_insertion_order():
    image = _manifest(GUEST, BANNER, SERVICE).to_image()
    records = _directory(image)
    assert [r[0] for r in records] == [
        ManifestObjectType.GuestOS, ManifestObjectType.BootMsg, ManifestObjectType.SystemService,
    ]


def test_payload_found_from_directory_record_alone():
    image = _manifest(BANNER, SERVICE, GUEST).to_image()
    data_start = dmfs.PREAMBLE_SIZE + 3 * dmfs.RECORD_SIZE
    kind, *_, data_off, data_len = _directory(image)[2]
    assert kind == ManifestObjectType.GuestOS
    assert image[data_start + data_off:data_start + data_off + data_len] == GUEST.data.as_bytes()


def test_round_trip_recovers_every_field():
    objects = [BANNER, SERVICE, GUEST]
    decoded = read_image(_manifest(*objects).to_image())
    assert decoded == objects
    assert decoded[1].properties == frozenset(
        {"service_console", "console_write", "auto_crash_restart"})
    assert decoded[0].properties is None


def test_encoding_is_idempotent():
    first = _manifest(BANNER, SERVICE, GUEST).to_image()
    second = _manifest(BANNER, SERVICE, GUEST).to_image()
    assert first == second


def test_property_order_does_not_change_the_image():
    a = ManifestObject(ManifestObjectType.SystemService, "s", "", b"x", ["b", "a", "c"])
    b = ManifestObject(ManifestObjectType.SystemService, "s", "", b"x", ["c", "a", "b"])
    assert _manifest(a).to_image() == _manifest(b).to_image()


def test_absent_and_empty_properties_are_distinct():
    absent = ManifestObject(ManifestObjectType.SystemService, "a", "", b"1")
    empty = ManifestObject(ManifestObjectType.SystemService, "e", "", b"2", ())
    image = _manifest(absent, empty).to_image()

    records = _directory(image)
    assert records[0][5:7] == (dmfs.NO_PROPERTIES, 0)
    assert records[1][5] != dmfs.NO_PROPERTIES
    assert records[1][6] == 0

    decoded = read_image(image)
    assert decoded[0].properties is None
    assert decoded[1].properties == frozenset()


def test_duplicate_names_are_kept():
    one = ManifestObject(ManifestObjectType.BootMsg, "welcome.txt", "first", b"1")
    two = ManifestObject(ManifestObjectType.BootMsg, "welcome.txt", "second", b"2")
    decoded = read_image(_manifest(one, two).to_image())
    assert [o.description for o in decoded] == ["first", "second"]


def test_unicode_text_round_trips():
    obj = ManifestObject(ManifestObjectType.BootMsg, "bannière", "Grüße ✓", "✓\n".encode('utf-8'))
    assert read_image(_manifest(obj).to_image()) == [obj]


def test_manifest_iteration_is_read_only_view():
    manifest = _manifest(BANNER, GUEST)
    assert len(manifest) == 2
    assert list(manifest) == [BANNER, GUEST]


def test_data_accepts_plain_bytes_or_variant():
    plain = ManifestObject(ManifestObjectType.GuestOS, "g", "", bytearray(b"abc"))
    wrapped = ManifestObject(ManifestObjectType.GuestOS, "g", "", Bytes(b"abc"))
    assert isinstance(plain.data, Bytes)
    assert plain == wrapped


def test_oversized_field_is_reported(monkeypatch):
    monkeypatch.setattr(dmfs, "U32_MAX", 16)
    manifest = _manifest(ManifestObject(ManifestObjectType.GuestOS, "big", "", bytes(17)))
    with pytest.raises(DmfsError, match="doesn't fit"):
        manifest.to_image()


def test_field_end_overflow_is_reported(monkeypatch):
    monkeypatch.setattr(dmfs, "U32_MAX", 40)
    # payload starts at offset 1 and is 40 bytes long, so it ends at 41
    manifest = _manifest(ManifestObject(ManifestObjectType.GuestOS, "a", "", bytes(40)))
    with pytest.raises(DmfsError, match="Payload of 'a' end"):
        manifest.to_image()


def test_field_ending_exactly_at_limit_is_accepted(monkeypatch):
    monkeypatch.setattr(dmfs, "U32_MAX", 40)
    manifest = _manifest(ManifestObject(ManifestObjectType.GuestOS, "a", "", bytes(39)))
    assert read_image(manifest.to_image())[0].data.as_bytes() == bytes(39)


def test_later_object_past_limit_is_reported(monkeypatch):
    monkeypatch.setattr(dmfs, "U32_MAX", 40)
    manifest = _manifest(
        ManifestObject(ManifestObjectType.GuestOS, "a", "", bytes(39)),
        ManifestObject(ManifestObjectType.GuestOS, "b", "", b"x"),
    )
    with pytest.raises(DmfsError, match="Name of 'b' end"):
        manifest.to_image()


def test_reader_rejects_bad_magic():
    image = bytearray(Manifest().to_image())
    image[0:4] = b'NOPE'
    with pytest.raises(DmfsError, match="magic"):
        read_image(image)


def test_reader_rejects_future_version():
    image = bytearray(_manifest(BANNER).to_image())
    struct.pack_into('<I', image, 4, dmfs.DMFS_VERSION + 1)
    with pytest.raises(DmfsError, match="version"):
        read_image(image)


def test_reader_rejects_truncated_images():
    image = _manifest(BANNER, GUEST).to_image()
    with pytest.raises(DmfsError):
        read_image(image[:8])
    with pytest.raises(DmfsError, match="truncated"):
        read_image(image[:dmfs.PREAMBLE_SIZE + 10])
    with pytest.raises(DmfsError, match="outside the data region"):
        read_image(image[:-1])


def test_reader_rejects_unknown_kind():
    image = bytearray(_manifest(BANNER).to_image())
    struct.pack_into('<I', image, dmfs.PREAMBLE_SIZE, 99)
    with pytest.raises(DmfsError, match="unknown kind"):
        read_image(image)
