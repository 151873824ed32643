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

import datetime
import struct
import time
import zipfile
import zlib

from zipstreamer.Errors import WriteError
from zipstreamer.Kernel import getLogger
from zipstreamer.Settings import COMPRESSIONS, DEFLATE_LEVEL

logger = getLogger(__name__)

ZIP64_LIMIT = 0xFFFFFFFF
ZIP64_COUNT_LIMIT = 0xFFFF


def unixToDosTime(timestamp):
    """
    Convert a Unix timestamp to (dosTime, dosDate).

    DOS time: bits 0-4 seconds/2, bits 5-10 minutes, bits 11-15 hours.
    DOS date: bits 0-4 day, bits 5-8 month, bits 9-15 year - 1980.
    """
    if timestamp is None or timestamp <= 0:
        return 0, (1 << 5) | 1 # 1980-01-01 00:00:00

    try:
        dt = datetime.datetime.fromtimestamp(timestamp)
    except (ValueError, OSError, OverflowError):
        return 0, (1 << 5) | 1

    year = max(1980, min(2107, dt.year))

    dosTime = ((dt.hour & 0x1F) << 11) | ((dt.minute & 0x3F) << 5) | ((dt.second // 2) & 0x1F)
    dosDate = (((year - 1980) & 0x7F) << 9) | ((dt.month & 0x0F) << 5) | (dt.day & 0x1F)
    return dosTime, dosDate


class ArchiveEntryState:
    """Metadata of one archive entry, collected while its data is written"""

    def __init__(self, name: str, method: int, headerOffset: int, timestamp=None, compressor=None, zip64=False):
        self.name = name
        self.nameBytes = name.encode('utf-8')
        self.method = method
        self.headerOffset = headerOffset
        self.dosTime, self.dosDate = unixToDosTime(timestamp)
        self.compressor = compressor
        self.zip64 = zip64
        self.crc = 0
        self.compressedSize = 0
        self.uncompressedSize = 0
        self.closed = False

    @property
    def needsZip64(self) -> bool:
        return (
            self.compressedSize >= ZIP64_LIMIT or self.uncompressedSize >= ZIP64_LIMIT or
            self.headerOffset >= ZIP64_LIMIT
        )

    def __repr__(self):
        return (
            f'ArchiveEntryState(name={self.name!r}, method={self.method}, crc={self.crc:#010x}, '
            f'compressed={self.compressedSize}, uncompressed={self.uncompressedSize})'
        )


class ZipArchiveWriter:
    """
    Appends entries one at a time to a ZIP container held in an ArchiveSink.

    Every entry is written as local file header + data + data descriptor, so
    nothing already in the sink is ever patched. The container becomes a valid
    archive only after finalize() appended the central directory and footer.

    Compression:
    - store: data copied as is, no state carried between chunks
    - deflate: one raw deflate stream per entry, flushed when the entry closes

    Zip64:
    - default: records switch to Zip64 only once a size or offset crosses 4 GiB.
      The local header of such an entry has no Zip64 extra, so readers that walk
      local headers instead of the central directory cannot size its descriptor.
    - forceZip64: every local header carries a Zip64 extra and every data
      descriptor uses 8-byte sizes, for consumers that may exceed 4 GiB per entry.
    """

    # Signatures, see PKWARE APPNOTE.TXT
    LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50
    CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
    END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0] # 0x06054b50
    DATA_DESCRIPTOR_SIGNATURE = 0x08074b50
    ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = 0x06064b50
    ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = 0x07064b50
    ZIP64_EXTRA_TAG = 0x0001

    METHODS = {'store': zipfile.ZIP_STORED, 'deflate': zipfile.ZIP_DEFLATED}

    # General purpose bit flags
    DATA_DESCRIPTOR_FLAG = 0x0008 # Bit 3: CRC and sizes follow the data
    UTF8_FLAG = 0x0800 # Bit 11: UTF-8 file names

    ARCHIVE_ATTRIBUTE = 0x20

    def __init__(
        self, sink, compression: str = 'store', deflateLevel: int = DEFLATE_LEVEL, forceZip64: bool = False
    ):
        if compression not in COMPRESSIONS:
            raise ValueError(f"Invalid compression: {compression}")

        self.sink = sink
        self.compression = compression
        self.deflateLevel = deflateLevel
        self.forceZip64 = forceZip64
        self._entries = []
        self._current = None
        self._finalized = False

    @property
    def entries(self):
        """Closed entries, in archive order"""
        return tuple(self._entries)

    @property
    def currentEntry(self):
        return self._current

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _checkOpen(self, action):
        if self._finalized:
            raise WriteError(f"Cannot {action}: archive is already finalized")

    def beginEntry(self, name: str, compressionMethod: str = None, timestamp=None) -> ArchiveEntryState:
        """
        Start a new entry, closing the previous one if it is still open.

        Args:
            name: Entry name inside the archive
            compressionMethod: 'store' or 'deflate', defaults to the writer's compression
            timestamp: Unix modification time, defaults to now

        Raises:
            WriteError: Empty name, unknown method, or archive already finalized
        """
        self._checkOpen('begin entry')

        if not isinstance(name, str) or not name:
            raise WriteError(f"Entry name must be a non-empty string, got {name!r}")

        compressionMethod = compressionMethod or self.compression
        if compressionMethod not in self.METHODS:
            raise WriteError(f"Unknown compression method: {compressionMethod}")

        self.closeEntry()

        method = self.METHODS[compressionMethod]
        compressor = None
        if method == zipfile.ZIP_DEFLATED:
            compressor = zlib.compressobj(self.deflateLevel, zlib.DEFLATED, -zlib.MAX_WBITS)

        state = ArchiveEntryState(
            name,
            method,
            headerOffset=self.sink.length,
            timestamp=time.time() if timestamp is None else timestamp,
            compressor=compressor,
            zip64=self.forceZip64
        )

        self.sink.append(self._makeLocalFileHeader(state))
        self._current = state

        logger.debug(f"Began entry {name!r} at offset {state.headerOffset} ({compressionMethod})")
        return state

    def appendData(self, data: bytes) -> int:
        """
        Append a chunk of the current entry's data.

        Returns:
            int: Number of bytes committed to the sink for this chunk (may be 0 for deflate)

        Raises:
            WriteError: No open entry, or archive already finalized
        """
        self._checkOpen('append data')

        state = self._current
        if state is None:
            raise WriteError("Cannot append data: no entry has been begun")

        if not data:
            return 0

        state.crc = zlib.crc32(data, state.crc)
        state.uncompressedSize += len(data)

        payload = state.compressor.compress(data) if state.compressor else data
        if payload:
            self.sink.append(payload)
            state.compressedSize += len(payload)

        return len(payload)

    def closeEntry(self):
        """
        Commit the rest of the current entry (pending compressed bytes and the data
        descriptor). No-op when no entry is open.

        Returns:
            ArchiveEntryState or None
        """
        state = self._current
        if state is None:
            return None

        if state.compressor:
            tail = state.compressor.flush()
            state.compressor = None
            if tail:
                self.sink.append(tail)
                state.compressedSize += len(tail)

        self.sink.append(self._makeDataDescriptor(state))

        state.closed = True
        self._entries.append(state)
        self._current = None

        logger.debug(f"Closed entry {state!r}")
        return state

    def finalize(self) -> int:
        """
        Close the last entry and append the central directory and end records.

        Returns:
            int: Final archive length

        Raises:
            WriteError: finalize() was already called
        """
        self._checkOpen('finalize')
        self.closeEntry()

        centralDirStart = self.sink.length
        for state in self._entries:
            self.sink.append(self._makeCentralDirHeader(state))
        centralDirSize = self.sink.length - centralDirStart

        needsZip64 = (
            len(self._entries) >= ZIP64_COUNT_LIMIT or centralDirSize >= ZIP64_LIMIT or
            centralDirStart >= ZIP64_LIMIT
        )

        if needsZip64:
            zip64EocdOffset = self.sink.length
            self.sink.append(self._makeZip64EndOfCentralDir(len(self._entries), centralDirSize, centralDirStart))
            self.sink.append(self._makeZip64Locator(zip64EocdOffset))

        self.sink.append(self._makeEndOfCentralDir(len(self._entries), centralDirSize, centralDirStart))
        self._finalized = True

        logger.debug(f"Finalized archive with {len(self._entries)} entries, {self.sink.length} bytes")
        return self.sink.length

    def flush(self):
        """Make every committed byte visible to sink readers"""
        self.sink.flush()

    def _makeLocalFileHeader(self, state: ArchiveEntryState) -> bytes:
        # CRC and sizes are unknown yet, they go to the data descriptor.
        extraField = b''
        sizeField = 0
        if state.zip64:
            # Sizes are saturated and the real ones follow in the 8-byte descriptor
            sizeField = ZIP64_LIMIT
            extraField = struct.pack('<HHQQ', self.ZIP64_EXTRA_TAG, 16, 0, 0)

        versionNeeded = 45 if state.zip64 or state.headerOffset >= ZIP64_LIMIT else 20

        header = struct.pack(
            '<IHHHHHIIIHH',
            self.LOCAL_FILE_HEADER_SIGNATURE,
            versionNeeded,
            self.DATA_DESCRIPTOR_FLAG | self.UTF8_FLAG,
            state.method,
            state.dosTime,
            state.dosDate,
            0, # CRC-32
            sizeField, # Compressed size
            sizeField, # Uncompressed size
            len(state.nameBytes),
            len(extraField),
        )
        return header + state.nameBytes + extraField

    def _makeDataDescriptor(self, state: ArchiveEntryState) -> bytes:
        if state.zip64 or state.compressedSize >= ZIP64_LIMIT or state.uncompressedSize >= ZIP64_LIMIT:
            return struct.pack(
                '<IIQQ', self.DATA_DESCRIPTOR_SIGNATURE, state.crc & 0xFFFFFFFF, state.compressedSize,
                state.uncompressedSize
            )

        return struct.pack(
            '<IIII', self.DATA_DESCRIPTOR_SIGNATURE, state.crc & 0xFFFFFFFF, state.compressedSize,
            state.uncompressedSize
        )

    def _makeCentralDirHeader(self, state: ArchiveEntryState) -> bytes:
        extraField = b''
        if state.needsZip64:
            # Order is fixed by the format: uncompressed, compressed, offset
            extraData = b''
            if state.uncompressedSize >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', state.uncompressedSize)
            if state.compressedSize >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', state.compressedSize)
            if state.headerOffset >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', state.headerOffset)

            extraField = struct.pack('<HH', self.ZIP64_EXTRA_TAG, len(extraData)) + extraData

        version = 45 if state.needsZip64 else 20

        header = struct.pack(
            '<IHHHHHHIIIHHHHHII',
            self.CENTRAL_DIR_SIGNATURE,
            version, # Version made by
            version, # Version needed to extract
            self.DATA_DESCRIPTOR_FLAG | self.UTF8_FLAG,
            state.method,
            state.dosTime,
            state.dosDate,
            state.crc & 0xFFFFFFFF,
            min(state.compressedSize, ZIP64_LIMIT),
            min(state.uncompressedSize, ZIP64_LIMIT),
            len(state.nameBytes),
            len(extraField),
            0, # File comment length
            0, # Disk number start
            0, # Internal file attributes
            self.ARCHIVE_ATTRIBUTE,
            min(state.headerOffset, ZIP64_LIMIT),
        )
        return header + state.nameBytes + extraField

    def _makeZip64EndOfCentralDir(self, entryCount: int, centralDirSize: int, centralDirStart: int) -> bytes:
        return struct.pack(
            '<IQHHIIQQQQ',
            self.ZIP64_END_OF_CENTRAL_DIR_SIGNATURE,
            44, # Size of the remaining record
            45, # Version made by
            45, # Version needed to extract
            0, # Number of this disk
            0, # Disk where central directory starts
            entryCount,
            entryCount,
            centralDirSize,
            centralDirStart,
        )

    def _makeZip64Locator(self, zip64EocdOffset: int) -> bytes:
        return struct.pack('<IIQI', self.ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE, 0, zip64EocdOffset, 1)

    def _makeEndOfCentralDir(self, entryCount: int, centralDirSize: int, centralDirStart: int) -> bytes:
        # Saturated values tell readers to look at the Zip64 record.
        return struct.pack(
            '<IHHHHIIH',
            self.END_OF_CENTRAL_DIR_SIGNATURE,
            0, # Number of this disk
            0, # Disk where central directory starts
            min(entryCount, ZIP64_COUNT_LIMIT),
            min(entryCount, ZIP64_COUNT_LIMIT),
            min(centralDirSize, ZIP64_LIMIT),
            min(centralDirStart, ZIP64_LIMIT),
            0, # Comment length
        )
