#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# SPDX-License-Identifier: MIT

"""
dmfsdump.py - List the objects held in a DMFS image

Usage:
    dmfsdump image.dmfs
"""

import argparse
import sys

from dmfs import DmfsError, read_image


def describe(index, obj):
    props = ''
    if obj.properties is not None:
        props = ' [' + ', '.join(sorted(obj.properties)) + ']'
    size = len(obj.data.as_bytes())
    return f"{index:3d}  {obj.kind.name:<13} {obj.name:<24} {size:>10} bytes{props}  {obj.description}"


def main(argv=None):
    parser = argparse.ArgumentParser(prog='dmfsdump', description="List the contents of a DMFS image")
    parser.add_argument("image", help="DMFS image file")
    args = parser.parse_args(argv)

    try:
        with open(args.image, 'rb') as f:
            blob = f.read()
        objects = read_image(blob)
    except (OSError, DmfsError) as e:
        print(f"dmfsdump error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"{args.image}: {len(blob)} bytes, {len(objects)} objects")
    for i, obj in enumerate(objects):
        print(describe(i, obj))


if __name__ == "__main__":
    main()
