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

from zipstreamer.Errors import EmissionError
from zipstreamer.Kernel import getLogger

logger = getLogger(__name__)


class EmissionBuffer:
    """
    Hands out "only what is new" from an ArchiveSink.

    The emission cursor marks how much of the sink has been handed to the
    consumer. Every drain reads exactly [cursor, sink.length) and moves the
    cursor to sink.length, so consecutive drains never overlap and never leave
    a gap. Drained bytes are released from the sink afterwards.
    """

    def __init__(self, sink):
        self.sink = sink
        self._cursor = 0
        self._drains = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def pending(self) -> int:
        """Committed bytes not drained yet"""
        return self.sink.length - self._cursor

    @property
    def drains(self) -> int:
        return self._drains

    def drainNewBytes(self) -> bytes:
        """
        Return the bytes appended since the previous drain (b'' if none).

        Raises:
            EmissionError: The sink is closed or cannot be read
        """
        if self.sink.closed:
            raise EmissionError("Cannot drain: archive sink is already closed")

        self.sink.flush()

        start, end = self._cursor, self.sink.length
        if end < start:
            raise EmissionError(f"Archive sink shrank below the emission cursor ({end} < {start})")

        if start == end:
            return b''

        data = self.sink.read(start, end)

        self._cursor = end
        self._drains += 1
        self.sink.release(end)

        logger.debug(f"Drained [{start}, {end}) ({len(data)} bytes)")
        return data
