#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# ZipStreamer - Stream remote files into a single ZIP archive
# Copyright (C) 2025 ZipStreamer contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import json

from dataclasses import dataclass
from collections.abc import Sequence
from typing import Iterator

from zipstreamer.Errors import ManifestError
from zipstreamer.Kernel import getLogger

logger = getLogger(__name__)


@dataclass(frozen=True)
class ManifestEntry:
    """One resource to fetch, stored in the archive under `name`"""
    url: str
    name: str


class Manifest(Sequence):
    """
    Ordered, read-only list of ManifestEntry. The order is the archive entry
    order and the emission order.
    """

    def __init__(self, entries=(), source: str = None):
        self._entries = tuple(entries)
        self.source = source

    def __getitem__(self, index):
        return self._entries[index]

    def __len__(self):
        return len(self._entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries)

    def __repr__(self):
        return f'Manifest({len(self._entries)} entries, source={self.source!r})'

    @property
    def names(self):
        return [entry.name for entry in self._entries]


def _parseRecord(index: int, record, source: str) -> ManifestEntry:
    if not isinstance(record, dict):
        raise ManifestError(f"Manifest record #{index} must be an object, got {type(record).__name__}", source)

    fields = {}
    for key in ('url', 'filename'):
        value = record.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ManifestError(f"Manifest record #{index} has a missing or empty '{key}'", source)
        fields[key] = value

    return ManifestEntry(url=fields['url'], name=fields['filename'])


def parseManifest(text, source: str = None) -> Manifest:
    """
    Parse a JSON array of {"url": ..., "filename": ...} records.

    Raises:
        ManifestError: Invalid JSON or malformed records
    """
    try:
        records = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(f"Manifest is not valid JSON: {e}", source) from e

    if not isinstance(records, list):
        raise ManifestError(f"Manifest must be a JSON array, got {type(records).__name__}", source)

    manifest = Manifest((_parseRecord(i, record, source) for i, record in enumerate(records)), source=source)
    logger.debug(f"Parsed manifest {source or '<memory>'} with {len(manifest)} entries")
    return manifest


def loadManifest(path: str) -> Manifest:
    """
    Read and parse the manifest file in one go.

    Raises:
        ManifestError: The file cannot be read or parsed
    """
    try:
        with open(path, 'rb') as f:
            content = f.read()
    except OSError as e:
        raise ManifestError(f"Unable to read manifest {path}: {e}", path) from e

    return parseManifest(content, source=path)
