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

import os
import platform as platformModule

from zipstreamer.Kernel import Singleton, getLogger

DEFAULT_MANIFEST_PATH = os.getenv('MANIFEST_PATH', 'sample_archive.json')

# Archive options
COMPRESSIONS = ('store', 'deflate')
DEFAULT_COMPRESSION = os.getenv('ARCHIVE_COMPRESSION', 'store')
SINK_BACKENDS = ('memory', 'tempfile')
DEFAULT_SINK = os.getenv('ARCHIVE_SINK', 'memory')
DEFAULT_ARCHIVE_NAME = os.getenv('ARCHIVE_NAME', 'images.zip')
DEFLATE_LEVEL = int(os.getenv('DEFLATE_LEVEL', 6))
# Zip64 local headers for every entry, needed by strict readers once an entry may pass 4 GiB
FORCE_ZIP64 = os.getenv('FORCE_ZIP64', 'False') == 'True'

# Fetch chunk size (64 KiB) and per-fetch timeout in seconds, 0 disables the timeout
FETCH_CHUNK_SIZE = int(os.getenv('FETCH_CHUNK_SIZE', 64 * 1024))
FETCH_TIMEOUT = float(os.getenv('FETCH_TIMEOUT', 30))

# 0 means one emission per manifest entry only
DRAIN_THRESHOLD = int(os.getenv('DRAIN_THRESHOLD', 0))

DEFAULT_STREAM_PATH = os.getenv('STREAM_PATH', '/stream/images')
DEFAULT_HOST = os.getenv('SERVER_HOST', '127.0.0.1')
DEFAULT_PORT = int(os.getenv('SERVER_PORT', 8000))

SUPPORT_URL = 'https://github.com/zipstreamer/zipstreamer/issues'

logger = getLogger(__name__)


# Singleton
class SettingsGetter(Singleton):

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(
        self,
        manifestPath=None,
        compression=None,
        sink=None,
        archiveName=None,
        streamPath=None,
        chunkSize=None,
        fetchTimeout=None,
        drainThreshold=None,
        deflateLevel=None,
        forceZip64=None,
        host=None,
        port=None,
        platform=None,
    ):
        """Snapshot the effective configuration. Explicit arguments win over environment defaults."""
        self._manifestPath = manifestPath or DEFAULT_MANIFEST_PATH
        self._compression = compression or DEFAULT_COMPRESSION
        self._sink = sink or DEFAULT_SINK
        self._archiveName = archiveName or DEFAULT_ARCHIVE_NAME
        self._streamPath = streamPath or DEFAULT_STREAM_PATH
        self._chunkSize = chunkSize or FETCH_CHUNK_SIZE
        self._fetchTimeout = FETCH_TIMEOUT if fetchTimeout is None else fetchTimeout
        self._drainThreshold = DRAIN_THRESHOLD if drainThreshold is None else drainThreshold
        self._deflateLevel = DEFLATE_LEVEL if deflateLevel is None else deflateLevel
        self._forceZip64 = FORCE_ZIP64 if forceZip64 is None else forceZip64
        self._host = host or DEFAULT_HOST
        self._port = DEFAULT_PORT if port is None else port
        self._platform = platform or platformModule.system()

        self._validate()

    def _validate(self):
        if self._compression not in COMPRESSIONS:
            raise ValueError(f"Invalid compression: {self._compression}")

        if self._sink not in SINK_BACKENDS:
            raise ValueError(f"Invalid archive sink: {self._sink}")

        if not self._streamPath.startswith('/'):
            raise ValueError(f"Stream path must start with '/': {self._streamPath}")

        if not -1 <= self._deflateLevel <= 9:
            raise ValueError(f"Invalid deflate level: {self._deflateLevel}")

    def update(self, **overrides):
        """Apply CLI overrides; None values keep the current setting."""
        for key, value in overrides.items():
            if value is None:
                continue

            attribute = f'_{key}'
            if not hasattr(self, attribute):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, attribute, value)

        self._validate()

    @property
    def manifestPath(self):
        return self._manifestPath

    @property
    def compression(self):
        return self._compression

    @property
    def sink(self):
        return self._sink

    @property
    def archiveName(self):
        return self._archiveName

    @property
    def streamPath(self):
        return self._streamPath

    @property
    def chunkSize(self):
        return self._chunkSize

    @property
    def fetchTimeout(self):
        # requests expects None for "no timeout"
        return self._fetchTimeout or None

    @property
    def drainThreshold(self):
        return self._drainThreshold

    @property
    def deflateLevel(self):
        return self._deflateLevel

    @property
    def forceZip64(self):
        return self._forceZip64

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    def isWindows(self):
        return self._platform == "Windows"

    def isLinux(self):
        return self._platform == "Linux"

    def isDarwin(self):
        return self._platform == "Darwin"

    def getSupportURL(self):
        return SUPPORT_URL
