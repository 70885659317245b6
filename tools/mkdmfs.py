#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# SPDX-License-Identifier: MIT

"""
mkdmfs.py - Create a DMFS image file to embed in the hypervisor

Usage:
    mkdmfs [--verbose] [-m manifest.toml] [-t ARCH] [-q debug|release] [-o OUTFILE]
           [--no-downloads] [--no-services] [--no-guests]

Settings come from the command line first, then from the [defaults] table of
the manifest configuration file. If -m is omitted, manifest.toml is searched
for from the current directory up through its parents.

Manifest configuration (TOML, every entry optional, paths relative to the
directory holding the file):

    [defaults]
    arch = "riscv64gc-unknown-none-elf"
    quality = "debug"
    outfile = "boot/dmfs.img"

    [banners]
    path = "boot/banners"              # <base arch>.txt is included if the arch is known
    welcome = "boot/banners/welcome.txt"

    [services]
    path = "services"                  # fallback source dir for services without a table
    include = ["gooey"]                # or "gooey,other"

    [services.gooey]
    path = "services/gooey"
    description = "Console interface"
    properties = ["auto_crash_restart", "service_console", "console_write", "console_read"]

    [guest.riscv64-linux-busybox]
    path = "boot/guests"
    url = "https://example.org/riscv64-linux-busybox"
    description = "Busybox for RISC-V"

    [target.riscv64gc-unknown-none-elf]
    guests = ["riscv64-linux-busybox"]

Objects are added in a fixed order: banners, then services, then guests.
"""

import argparse
import os
import re
import sys
from pathlib import Path

import httpx
import toml

from dmfs import DmfsError, Manifest, ManifestObject, ManifestObjectType

MANIFEST_FILE = 'manifest.toml'

# give up searching the host file system for a config file after this many levels
SEARCH_MAX = 100

BASE_ARCHES = ('riscv', 'aarch64', 'arm', 'powerpc64', 'x86_64')
BASE_ARCH_RE = re.compile('|'.join(re.escape(a) for a in BASE_ARCHES))

QUALITIES = ('debug', 'release')

SERVICE_PROPERTIES = frozenset((
    'auto_crash_restart',
    'service_console',
    'console_write',
    'console_read',
))

DOWNLOAD_TIMEOUT = 300.0


class ConfigError(Exception):
    """The manifest configuration or command line settings are unusable."""


class BuildError(Exception):
    """An object of the image couldn't be located, fetched or read."""


def coalesce(*values):
    """Return the first value that isn't None, or None."""
    for value in values:
        if value is not None:
            return value
    return None


# =====================================================================
# Manifest configuration
# =====================================================================

class ServiceConfig:
    def __init__(self, path, description=None, properties=None):
        self.path = path
        self.description = description
        self.properties = properties


class GuestConfig:
    def __init__(self, path, url=None, description=None):
        self.path = path
        self.url = url
        self.description = description


class Config:
    """Structured view of a manifest.toml document."""

    def __init__(self):
        self.default_arch = None
        self.default_quality = None
        self.default_outfile = None
        self.banners_path = None
        self.banners_welcome = None
        self.services_path = None
        self.services_include = []
        self.services = {}
        self.guests = {}
        self.targets = {}


def _table(parent, key, where):
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: '{key}' must be a table, not {type(value).__name__}")
    return value


def _string(table, key, where):
    value = table.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigError(f"{where}: '{key}' must be a string, not {type(value).__name__}")
    return value


def _string_list(table, key, where, allow_csv=False):
    value = table.get(key)
    if value is None:
        return None
    if allow_csv and isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{where}: '{key}' must be a list of strings")
    return list(value)


def parse_config(doc, origin='<config>') -> Config:
    """Turn a decoded TOML document into a Config, validating types as we go."""
    if not isinstance(doc, dict):
        raise ConfigError(f"{origin}: top level must be a table")
    config = Config()

    defaults = _table(doc, 'defaults', origin)
    config.default_arch = _string(defaults, 'arch', f"{origin} [defaults]")
    config.default_quality = _string(defaults, 'quality', f"{origin} [defaults]")
    config.default_outfile = _string(defaults, 'outfile', f"{origin} [defaults]")

    banners = _table(doc, 'banners', origin)
    config.banners_path = _string(banners, 'path', f"{origin} [banners]")
    config.banners_welcome = _string(banners, 'welcome', f"{origin} [banners]")

    services = _table(doc, 'services', origin)
    config.services_path = _string(services, 'path', f"{origin} [services]")
    config.services_include = _string_list(services, 'include', f"{origin} [services]",
                                           allow_csv=True) or []
    for label, table in services.items():
        if label in ('path', 'include'):
            continue
        where = f"{origin} [services.{label}]"
        if not isinstance(table, dict):
            raise ConfigError(f"{where}: must be a table")
        properties = _string_list(table, 'properties', where)
        if properties is not None:
            unknown = sorted(set(properties) - SERVICE_PROPERTIES)
            if unknown:
                raise ConfigError(f"{where}: unknown service properties {', '.join(unknown)} "
                                  f"(expected any of {', '.join(sorted(SERVICE_PROPERTIES))})")
        config.services[label] = ServiceConfig(
            path=coalesce(_string(table, 'path', where), config.services_path),
            description=_string(table, 'description', where),
            properties=properties,
        )

    for label, table in _table(doc, 'guest', origin).items():
        where = f"{origin} [guest.{label}]"
        if not isinstance(table, dict):
            raise ConfigError(f"{where}: must be a table")
        path = _string(table, 'path', where)
        if path is None:
            raise ConfigError(f"{where}: missing 'path'")
        config.guests[label] = GuestConfig(
            path=path,
            url=_string(table, 'url', where),
            description=_string(table, 'description', where),
        )

    for arch, table in _table(doc, 'target', origin).items():
        where = f"{origin} [target.{arch}]"
        if not isinstance(table, dict):
            raise ConfigError(f"{where}: must be a table")
        config.targets[arch] = _string_list(table, 'guests', where) or []

    return config


def load_config(path) -> Config:
    try:
        doc = toml.load(str(path))
    except (toml.TomlDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Can't parse manifest configuration file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Can't read manifest configuration file {path}: {e}") from e
    return parse_config(doc, str(path))


def search_for_config(leafname=MANIFEST_FILE, start=None):
    """
    Look for leafname in start (default: the current directory), then in each
    parent in turn. Returns the path of the first one found, or None.
    """
    path = Path(start if start is not None else os.getcwd()).resolve()
    for _ in range(SEARCH_MAX):
        attempt = path / leafname
        if attempt.exists():
            return attempt
        if path.parent == path:
            return None
        path = path.parent
    return None


class Settings:
    """Everything a build needs: resolved options plus the parsed config."""

    def __init__(self, config_dir, config, output_filename=None, target_arch=None,
                 quality=None, verbose=False, no_downloads=False, no_services=False,
                 no_guests=False):
        if quality is not None and quality not in QUALITIES:
            raise ConfigError(f"Unknown build quality '{quality}' "
                              f"(expected {' or '.join(QUALITIES)})")
        self.config_dir = Path(config_dir)
        self.config = config
        self.output_filename = output_filename
        self.target_arch = target_arch
        self.quality = quality
        self.verbose = verbose
        self.no_downloads = no_downloads
        self.no_services = no_services
        self.no_guests = no_guests

    @classmethod
    def from_args(cls, args):
        if args.manifest:
            config_location = Path(args.manifest)
        else:
            config_location = search_for_config(MANIFEST_FILE)
            if config_location is None:
                raise ConfigError(f"Can't find manifest configuration file {MANIFEST_FILE} "
                                  f"in host file system")

        config = load_config(config_location)
        return cls(
            config_dir=config_location.resolve().parent,
            config=config,
            output_filename=coalesce(args.output, config.default_outfile),
            target_arch=coalesce(args.target, config.default_arch),
            quality=coalesce(args.quality, config.default_quality),
            verbose=args.verbose,
            no_downloads=args.no_downloads,
            no_services=args.no_services,
            no_guests=args.no_guests,
        )


# =====================================================================
# Path resolution
# =====================================================================

def base_architecture(target_arch):
    """Extract the platform family (riscv, aarch64, ...) from a target triple, or None."""
    if not target_arch:
        return None
    m = BASE_ARCH_RE.search(target_arch)
    return m.group(0) if m else None


def banner_path(base, banner_dir, target_arch):
    """Path of the arch-specific banner, or None if the arch family isn't known."""
    base_arch = base_architecture(target_arch)
    if base_arch is None:
        return None
    return Path(base) / banner_dir / f"{base_arch}.txt"


def welcome_path(base, welcome):
    return Path(base) / welcome


def service_path(base, service_dir, service_name, target_arch=None, quality=None):
    p = Path(base) / service_dir / 'target'

    # no arch directory may mean we're self-hosting
    if target_arch and (p / target_arch).is_dir():
        p = p / target_arch
    if quality:
        p = p / quality
    return p / service_name


def guest_path(base, guest_dir, label):
    return Path(base) / guest_dir / label


# =====================================================================
# Acquisition
# =====================================================================

def download(url, timeout=DOWNLOAD_TIMEOUT) -> bytes:
    """Fetch url in one go. Single attempt, no retries."""
    with httpx.Client(timeout=timeout, follow_redirects=True) as client:
        resp = client.get(url)
        resp.raise_for_status()
        return resp.content


def acquire_guest(label, path, url=None, no_downloads=False, verbose=False):
    """Make sure the guest image at path exists, downloading it from url if needed."""
    path = Path(path)
    if path.exists():
        return

    if url is None:
        raise BuildError(f"Guest {label} not found at {path} and no URL is configured to fetch it")
    if no_downloads:
        raise BuildError(f"Guest {label} not found at {path} and downloads are disabled")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BuildError(f"Can't create directory {path.parent} for guest {label}: {e}") from e

    if verbose:
        print(f"Downloading guest {label} from {url}")
    try:
        payload = download(url)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise BuildError(f"Failed to download guest {label} from {url}: {e}") from e

    try:
        with open(path, 'wb') as f:
            f.write(payload)
    except OSError as e:
        raise BuildError(f"Can't write guest {label} to {path}: {e}") from e

    if verbose:
        print(f"Saved {len(payload)} bytes of guest {label} to {path}")


# =====================================================================
# Manifest assembly
# =====================================================================

def load_file(path, verbose=False) -> bytes:
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise BuildError(f"Can't read file {path}: {e}") from e
    if verbose:
        print(f"Read {len(data)} bytes of {path}")
    return data


def add_banners(manifest, settings):
    config = settings.config
    base = settings.config_dir

    # start with an architecture-specific banner, if possible
    if config.banners_path is not None:
        p = banner_path(base, config.banners_path, settings.target_arch)
        if p is not None:
            base_arch = base_architecture(settings.target_arch)
            manifest.add(ManifestObject(
                ManifestObjectType.BootMsg,
                base_arch,
                f"Boot banner text for {base_arch} systems",
                load_file(p, settings.verbose),
            ))

    if config.banners_welcome is not None:
        p = welcome_path(base, config.banners_welcome)
        manifest.add(ManifestObject(
            ManifestObjectType.BootMsg,
            p.name,
            "Main boot banner text",
            load_file(p, settings.verbose),
        ))


def add_services(manifest, settings):
    config = settings.config
    for label in config.services_include:
        service = config.services.get(label)
        if service is None:
            if config.services_path is None:
                raise ConfigError(f"Service {label} is included but has no [services.{label}] "
                                  f"table and no services.path to find it in")
            service = ServiceConfig(config.services_path)
        if service.path is None:
            raise ConfigError(f"Service {label} has no path")

        p = service_path(settings.config_dir, service.path, label,
                         settings.target_arch, settings.quality)
        manifest.add(ManifestObject(
            ManifestObjectType.SystemService,
            label,
            coalesce(service.description, f"System service {label}"),
            load_file(p, settings.verbose),
            service.properties or (),
        ))


def add_guests(manifest, settings):
    config = settings.config
    target = settings.target_arch
    if target is None:
        return

    for label in config.targets.get(target, ()):
        guest = config.guests.get(label)
        if guest is None:
            raise BuildError(f"Target {target} includes guest {label}, "
                             f"which isn't defined in the manifest configuration")

        p = guest_path(settings.config_dir, guest.path, label)
        acquire_guest(label, p, guest.url, settings.no_downloads, settings.verbose)
        manifest.add(ManifestObject(
            ManifestObjectType.GuestOS,
            label,
            coalesce(guest.description, f"Guest OS {label}"),
            load_file(p, settings.verbose),
        ))


def build_manifest(settings) -> Manifest:
    """Gather banners, services and guests, in that order, into a new Manifest."""
    manifest = Manifest()
    add_banners(manifest, settings)
    if not settings.no_services:
        add_services(manifest, settings)
    if not settings.no_guests:
        add_guests(manifest, settings)
    return manifest


def write_image(path, image, verbose=False):
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            f.write(image)
    except OSError as e:
        raise BuildError(f"Can't write dmfs image to {path}: {e}") from e
    if verbose:
        print(f"{len(image)} bytes of dmfs image written successfully to {path}")


def build(settings):
    """Build the image described by settings and write it to the output file."""
    if settings.output_filename is None:
        raise BuildError("No output filename specified")
    output = settings.config_dir / settings.output_filename

    manifest = build_manifest(settings)
    try:
        image = manifest.to_image()
    except DmfsError as e:
        raise DmfsError(f"Failed to generate dmfs image: {e}") from e
    write_image(output, image, settings.verbose)
    return output


def fatal_error(msg):
    print(f"mkdmfs error: {msg}", file=sys.stderr)
    sys.exit(1)


# =====================================================================
# Main entry point
# =====================================================================

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='mkdmfs', description="Create DMFS images from a collection of files")
    parser.add_argument("-m", "--manifest", default=None,
                        help="Location of manifest config file (default: search for manifest.toml)")
    parser.add_argument("-t", "--target", default=None, help="Architecture of target system")
    parser.add_argument("-q", "--quality", default=None,
                        help="Whether this is a debug or release build")
    parser.add_argument("-o", "--output", default=None, help="Location of generated image file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Output progress of image creation")
    parser.add_argument("--no-downloads", action="store_true",
                        help="Never fetch missing guest images from the network")
    parser.add_argument("--no-services", action="store_true",
                        help="Leave system services out of the image")
    parser.add_argument("--no-guests", action="store_true",
                        help="Leave guest OS images out of the image")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = Settings.from_args(args)
        build(settings)
    except (ConfigError, BuildError, DmfsError) as e:
        fatal_error(str(e))


if __name__ == "__main__":
    main()
