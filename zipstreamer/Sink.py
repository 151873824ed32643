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
import tempfile

from zipstreamer.Errors import EmissionError, WriteError
from zipstreamer.Kernel import getLogger
from zipstreamer.Settings import SINK_BACKENDS

logger = getLogger(__name__)


class ArchiveSink:
    """
    Sequential, append-only byte store holding the in-progress archive.

    Offsets are absolute: `length` counts every byte ever appended, committed
    bytes are never rewritten. One sink belongs to exactly one request.
    """

    @classmethod
    def build(cls, kind: str = 'memory', **kwargs) -> 'ArchiveSink':
        """Factory for sink backends ('memory' or 'tempfile')"""
        if kind == 'memory':
            return MemoryArchiveSink()
        elif kind == 'tempfile':
            return TempFileArchiveSink(**kwargs)

        raise ValueError(f"Invalid archive sink: {kind}, expected one of {SINK_BACKENDS}")

    @property
    def length(self) -> int:
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    def append(self, data: bytes) -> int:
        """Append data, returning the absolute offset it was written at."""
        raise NotImplementedError

    def read(self, start: int, end: int) -> bytes:
        """Read the committed region [start, end)."""
        raise NotImplementedError

    def release(self, upTo: int):
        """Allow the backend to drop bytes before `upTo`; they will not be read again."""
        pass

    def flush(self):
        pass

    def close(self):
        raise NotImplementedError

    def _checkWritable(self):
        if self.closed:
            raise WriteError("Archive sink is already closed")

    def _checkRange(self, start: int, end: int, lowest: int = 0):
        if self.closed:
            raise EmissionError("Archive sink is already closed")

        if start < lowest or end < start or end > self.length:
            raise EmissionError(f"Invalid sink range [{start}, {end}) for sink of length {self.length}")

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()


class MemoryArchiveSink(ArchiveSink):
    """
    In-memory append log. Released prefixes are dropped, so the memory held is
    only the part of the archive not yet handed to the consumer.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._base = 0 # Absolute offset of _buffer[0]
        self._closed = False

    @property
    def length(self) -> int:
        return self._base + len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def retained(self) -> int:
        """Bytes currently held in memory"""
        return len(self._buffer)

    def append(self, data: bytes) -> int:
        self._checkWritable()

        offset = self.length
        self._buffer.extend(data)
        return offset

    def read(self, start: int, end: int) -> bytes:
        self._checkRange(start, end, lowest=self._base)
        return bytes(self._buffer[start - self._base:end - self._base])

    def release(self, upTo: int):
        if self._closed or upTo <= self._base:
            return

        upTo = min(upTo, self.length)
        del self._buffer[:upTo - self._base]
        self._base = upTo

    def close(self):
        if self._closed:
            return

        self._closed = True
        self._buffer = bytearray()


class TempFileArchiveSink(ArchiveSink):
    """
    Sink backed by a fresh named temporary file, deleted when the sink closes.
    Reads go through the same handle, the write position is restored afterwards.
    """

    def __init__(self, directory: str = None, prefix: str = 'zipstream-'):
        self._file = tempfile.NamedTemporaryFile(mode='w+b', prefix=prefix, suffix='.zip', dir=directory)
        self._length = 0
        self.path = self._file.name

        logger.debug(f"Created archive sink file {self.path}")

    @property
    def length(self) -> int:
        return self._length

    @property
    def closed(self) -> bool:
        return self._file.closed

    def append(self, data: bytes) -> int:
        self._checkWritable()

        offset = self._length
        try:
            self._file.write(data)
        except OSError as e:
            raise WriteError(f"Unable to write archive sink {self.path}: {e}") from e

        self._length += len(data)
        return offset

    def read(self, start: int, end: int) -> bytes:
        self._checkRange(start, end)

        try:
            self._file.flush()
            self._file.seek(start)
            data = self._file.read(end - start)
            self._file.seek(0, os.SEEK_END)
        except OSError as e:
            raise EmissionError(f"Unable to read archive sink {self.path}: {e}") from e

        if len(data) != end - start:
            raise EmissionError(f"Short read from archive sink {self.path}: {len(data)} of {end - start} bytes")

        return data

    def flush(self):
        if not self.closed:
            self._file.flush()

    def close(self):
        if self.closed:
            return

        # NamedTemporaryFile removes the file on close.
        self._file.close()
        logger.debug(f"Released archive sink file {self.path}")
