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

from enum import Enum, auto
from typing import Iterator

from zipstreamer.Archive import ZipArchiveWriter
from zipstreamer.Emission import EmissionBuffer
from zipstreamer.Errors import EmissionError, WriteError, ZipStreamError
from zipstreamer.Kernel import StreamEvent, getLogger
from zipstreamer.Settings import DEFLATE_LEVEL
from zipstreamer.Sink import MemoryArchiveSink
from zipstreamer.Utils import formatSize

logger = getLogger(__name__)


class StreamState(Enum):
    IDLE = auto()
    FETCHING = auto()
    APPENDING = auto()
    DRAINING = auto()
    FINALIZING = auto()
    FINAL_DRAINING = auto()
    DONE = auto()
    FAILED = auto()


class StreamOrchestrator:
    """
    Drives one request: for each manifest entry fetch, append, then drain and
    emit; after the last entry finalize the archive and emit the footer.

    Usage:
        orchestrator = StreamOrchestrator(manifest, ResourceFetcher())
        for emission in orchestrator.iterEmissions():
            consumer.write(emission)

    The concatenation of all emissions is the complete archive. Any error moves
    the stream to FAILED and propagates; nothing is emitted after that point.
    Closing the emission iterator early (consumer gone) stops further fetches.
    The archive sink is released on every path.
    """

    def __init__(
        self,
        manifest,
        fetcher,
        compression: str = 'store',
        sinkFactory=None,
        drainThreshold: int = 0,
        deflateLevel: int = DEFLATE_LEVEL,
        forceZip64: bool = False,
    ):
        """
        Args:
            manifest: Ordered ManifestEntry sequence
            fetcher: Object with fetch(url) -> iterable of byte chunks
            compression: 'store' or 'deflate', applied to every entry
            sinkFactory: Callable returning a fresh ArchiveSink (default: in-memory)
            drainThreshold: If > 0, also emit mid-entry once this many bytes are pending
            forceZip64: Write Zip64 local headers and descriptors for every entry
        """
        self.manifest = manifest
        self.fetcher = fetcher
        self.compression = compression
        self.sinkFactory = sinkFactory or MemoryArchiveSink
        self.drainThreshold = drainThreshold or 0
        self.deflateLevel = deflateLevel
        self.forceZip64 = forceZip64

        self.state = StreamState.IDLE
        self.currentIndex = None
        self.error = None

        self._sink = None
        self._writer = None
        self._buffer = None
        self._emissions = None
        self._archiveSize = 0

    @property
    def emittedSize(self) -> int:
        """The emission cursor: bytes handed to the consumer so far"""
        return self._buffer.cursor if self._buffer else 0

    @property
    def archiveSize(self) -> int:
        """Bytes committed to the archive sink so far"""
        if self._sink is not None and not self._sink.closed:
            return self._sink.length
        return self._archiveSize

    @property
    def sink(self):
        return self._sink

    def iterEmissions(self) -> Iterator[bytes]:
        """
        Start the stream. Can only be called once per orchestrator.

        Yields:
            bytes: One emission unit per manifest entry (more with drainThreshold), then the footer
        """
        if self._emissions is not None:
            raise WriteError("Stream orchestrator can only run once")

        self._emissions = self._run()
        return self._emissions

    def __iter__(self):
        return self.iterEmissions()

    def close(self):
        """Cancel the stream (if running) and release the archive sink."""
        if self._emissions is not None:
            self._emissions.close()
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()

    def _setState(self, state: StreamState):
        self.state = state

    def _run(self):
        self._sink = self.sinkFactory()
        self._writer = ZipArchiveWriter(
            self._sink, self.compression, deflateLevel=self.deflateLevel, forceZip64=self.forceZip64
        )
        self._buffer = EmissionBuffer(self._sink)

        logger.info(f"Streaming {len(self.manifest)} entries ({self.compression})")

        try:
            for index, entry in enumerate(self.manifest):
                yield from self._streamEntry(index, entry)

            self.currentIndex = None
            self._setState(StreamState.FINALIZING)
            self._writer.finalize()
            StreamEvent.finalize.trigger(orchestrator=self, entries=self._writer.entries)

            self._setState(StreamState.FINAL_DRAINING)
            footer = self._drain()

            # The archive is complete once the footer is handed over.
            self._setState(StreamState.DONE)
            logger.info(f"Archive complete: {len(self.manifest)} entries, {formatSize(self.emittedSize)}")
            yield footer

        except GeneratorExit:
            self._fail(EmissionError("Consumer stopped reading the stream"))
            raise
        except ZipStreamError as e:
            self._fail(e)
            raise
        except Exception as e:
            logger.exception(e)
            self._fail(e)
            raise
        finally:
            self._release()

    def _streamEntry(self, index, entry):
        self.currentIndex = index
        self._writer.beginEntry(entry.name)
        StreamEvent.entryCreate.trigger(orchestrator=self, index=index, entry=entry)

        self._setState(StreamState.FETCHING)
        chunks = iter(self.fetcher.fetch(entry.url))
        try:
            for chunk in chunks:
                self._setState(StreamState.APPENDING)
                self._writer.appendData(chunk)

                if self.drainThreshold and self._buffer.pending >= self.drainThreshold:
                    self._setState(StreamState.DRAINING)
                    yield self._drain()

                self._setState(StreamState.FETCHING)
        finally:
            # Stop the network read if we leave early.
            closeChunks = getattr(chunks, 'close', None)
            if closeChunks:
                closeChunks()

        state = self._writer.closeEntry()
        self._writer.flush()
        StreamEvent.entryComplete.trigger(orchestrator=self, index=index, entry=entry, state=state)

        self._setState(StreamState.DRAINING)
        data = self._drain()
        if data:
            yield data

    def _drain(self) -> bytes:
        offset = self._buffer.cursor
        data = self._buffer.drainNewBytes()
        if data:
            StreamEvent.emission.trigger(orchestrator=self, offset=offset, data=data)
        return data

    def _fail(self, error):
        if self.state in (StreamState.DONE, StreamState.FAILED):
            return

        self.error = error
        failedAt = self.state
        self._setState(StreamState.FAILED)

        entryInfo = f" at entry #{self.currentIndex}" if self.currentIndex is not None else ""
        logger.warning(f"Stream failed{entryInfo} while {failedAt.name}: {error}")
        StreamEvent.failure.trigger(orchestrator=self, error=error, index=self.currentIndex)

    def _release(self):
        if self._sink is None or self._sink.closed:
            return

        self._archiveSize = self._sink.length
        self._sink.close()
