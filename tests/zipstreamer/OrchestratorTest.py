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
import unittest
import zipfile
import zlib

from unittest.mock import patch

from zipstreamer.Errors import FetchError, WriteError
from zipstreamer.Kernel import StreamEvent
from zipstreamer.Manifest import Manifest, ManifestEntry
from zipstreamer.Orchestrator import StreamOrchestrator, StreamState
from zipstreamer.Sink import ArchiveSink

from ..StreamTestBase import FakeFetcher, readArchive

END_OF_CENTRAL_DIR = zipfile.stringEndArchive


def makeManifest(*names):
    return Manifest(ManifestEntry(url=f'http://upstream/{name}', name=name) for name in names)


class StreamOrchestratorTest(unittest.TestCase):

    def setUp(self):
        self.resources = {
            'http://upstream/a.bin': b'\x01\x02',
            'http://upstream/b.bin': b'\x03',
        }
        self.fetcher = FakeFetcher(self.resources)

    def testTwoEntryScenario(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)
        emissions = list(orchestrator.iterEmissions())

        # One emission per entry, then the footer
        self.assertEqual(len(emissions), 3)
        self.assertTrue(all(emissions))
        self.assertEqual(orchestrator.state, StreamState.DONE)

        data = b''.join(emissions)
        self.assertEqual(readArchive(data), [
            ('a.bin', b'\x01\x02', zipfile.ZIP_STORED),
            ('b.bin', b'\x03', zipfile.ZIP_STORED),
        ])
        self.assertEqual(orchestrator.emittedSize, len(data))
        self.assertEqual(orchestrator.archiveSize, len(data))
        self.assertTrue(orchestrator.sink.closed)
        print("[OK] a.bin + b.bin stream decodes in manifest order")

    def testEmissionsAreIncremental(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)
        emissions = orchestrator.iterEmissions()

        first = next(emissions)
        # The first entry is emitted before the second is fetched.
        self.assertEqual(self.fetcher.fetched, ['http://upstream/a.bin'])
        self.assertTrue(first.startswith(zipfile.stringFileHeader))
        self.assertNotIn(END_OF_CENTRAL_DIR, first)
        self.assertEqual(orchestrator.emittedSize, len(first))

        rest = list(emissions)
        self.assertTrue(rest[-1].endswith(b'\x00\x00') and END_OF_CENTRAL_DIR in rest[-1])

    def testCursorMonotonic(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin', 'a.bin'), self.fetcher)
        cursors = []
        for emission in orchestrator.iterEmissions():
            cursors.append(orchestrator.emittedSize)

        self.assertEqual(cursors, sorted(cursors))
        self.assertEqual(len(set(cursors)), len(cursors))
        self.assertEqual(cursors[-1], orchestrator.archiveSize)

    def testZeroEntries(self):
        orchestrator = StreamOrchestrator(Manifest(), self.fetcher)
        emissions = list(orchestrator.iterEmissions())

        self.assertEqual(len(emissions), 1)
        self.assertEqual(len(emissions[0]), 22)
        self.assertEqual(readArchive(emissions[0]), [])
        self.assertEqual(self.fetcher.fetched, [])
        self.assertEqual(orchestrator.state, StreamState.DONE)

    def testSecondFetchFails(self):
        self.resources['http://upstream/b.bin'] = FetchError('HTTP 404', url='http://upstream/b.bin', statusCode=404)
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)

        emissions = []
        with self.assertRaises(FetchError):
            for emission in orchestrator.iterEmissions():
                emissions.append(emission)

        # Only the first entry made it out, no footer
        self.assertEqual(len(emissions), 1)
        self.assertNotIn(END_OF_CENTRAL_DIR, b''.join(emissions))
        self.assertEqual(orchestrator.state, StreamState.FAILED)
        self.assertEqual(orchestrator.currentIndex, 1)
        self.assertIsInstance(orchestrator.error, FetchError)
        self.assertTrue(orchestrator.sink.closed)
        print("[OK] Fetch failure ends the stream without footer")

    def testFirstFetchFailsEmitsNothing(self):
        self.resources['http://upstream/a.bin'] = FetchError('refused', url='http://upstream/a.bin')
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)

        with self.assertRaises(FetchError):
            list(orchestrator.iterEmissions())

        self.assertEqual(orchestrator.emittedSize, 0)
        self.assertEqual(self.fetcher.fetched, ['http://upstream/a.bin'])

    def testDeflateWithDrainThreshold(self):
        payload = bytes(range(256)) * 64
        self.resources['http://upstream/big.bin'] = payload
        fetcher = FakeFetcher(self.resources, chunkSize=1024)

        orchestrator = StreamOrchestrator(
            makeManifest('big.bin', 'b.bin'), fetcher, compression='deflate', drainThreshold=64
        )
        emissions = list(orchestrator.iterEmissions())

        # Mid-entry drains on top of the per-entry and footer emissions
        self.assertGreater(len(emissions), 3)
        self.assertEqual(readArchive(b''.join(emissions)), [
            ('big.bin', payload, zipfile.ZIP_DEFLATED),
            ('b.bin', b'\x03', zipfile.ZIP_DEFLATED),
        ])

    def testTempFileSink(self):
        sinks = []

        def sinkFactory():
            sinks.append(ArchiveSink.build('tempfile'))
            return sinks[-1]

        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher, sinkFactory=sinkFactory)
        data = b''.join(orchestrator.iterEmissions())

        self.assertEqual([name for name, _, _ in readArchive(data)], ['a.bin', 'b.bin'])
        self.assertEqual(len(sinks), 1)
        self.assertFalse(os.path.exists(sinks[0].path))

    def testTempFileRemovedOnFailure(self):
        sinks = []

        def sinkFactory():
            sinks.append(ArchiveSink.build('tempfile'))
            return sinks[-1]

        self.resources['http://upstream/b.bin'] = FetchError('refused', url='http://upstream/b.bin')
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher, sinkFactory=sinkFactory)

        emissions = []
        with self.assertRaises(FetchError):
            for emission in orchestrator.iterEmissions():
                emissions.append(emission)

        self.assertEqual(len(emissions), 1)
        self.assertEqual(orchestrator.state, StreamState.FAILED)
        self.assertFalse(os.path.exists(sinks[0].path))
        print("[OK] Failed stream removes its temp file")

    def testTempFileRemovedOnCancellation(self):
        sink = ArchiveSink.build('tempfile')
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher, sinkFactory=lambda: sink)

        emissions = orchestrator.iterEmissions()
        next(emissions)
        self.assertTrue(os.path.exists(sink.path))

        emissions.close()

        self.assertEqual(orchestrator.state, StreamState.FAILED)
        self.assertFalse(os.path.exists(sink.path))
        self.assertEqual(self.fetcher.fetched, ['http://upstream/a.bin'])

    def testDeflateLevel(self):
        payload = b'zipstreamer ' * 4096
        self.resources['http://upstream/text.txt'] = payload

        for level in (1, 9):
            with patch('zipstreamer.Archive.zlib.compressobj', wraps=zlib.compressobj) as compressobj:
                orchestrator = StreamOrchestrator(
                    makeManifest('text.txt'), FakeFetcher(self.resources, chunkSize=1024), compression='deflate',
                    deflateLevel=level
                )
                data = b''.join(orchestrator.iterEmissions())

            self.assertEqual(compressobj.call_args.args[0], level)
            self.assertLess(len(data), len(payload))
            self.assertEqual(readArchive(data), [('text.txt', payload, zipfile.ZIP_DEFLATED)])

    def testCancellationReleasesSink(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)
        emissions = orchestrator.iterEmissions()
        next(emissions)

        orchestrator.close()

        self.assertEqual(orchestrator.state, StreamState.FAILED)
        self.assertTrue(orchestrator.sink.closed)
        self.assertEqual(self.fetcher.fetched, ['http://upstream/a.bin'])
        print("[OK] Consumer cancellation stops fetching and releases the sink")

    def testCloseAfterDone(self):
        with StreamOrchestrator(makeManifest('a.bin'), self.fetcher) as orchestrator:
            list(orchestrator.iterEmissions())

        self.assertEqual(orchestrator.state, StreamState.DONE)
        self.assertIsNone(orchestrator.error)

    def testCloseBeforeStart(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin'), self.fetcher)
        orchestrator.close()

        self.assertEqual(orchestrator.state, StreamState.IDLE)
        self.assertEqual(self.fetcher.fetched, [])

    def testRunsOnlyOnce(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin'), self.fetcher)
        list(orchestrator.iterEmissions())

        with self.assertRaises(WriteError):
            orchestrator.iterEmissions()

    def testStatesAtEmission(self):
        orchestrator = StreamOrchestrator(makeManifest('a.bin', 'b.bin'), self.fetcher)
        states = [orchestrator.state for _ in orchestrator.iterEmissions()]

        self.assertEqual(states, [StreamState.DRAINING, StreamState.DRAINING, StreamState.DONE])


class StreamEventTest(unittest.TestCase):

    def setUp(self):
        self.received = []

        def onEntryCreate(**kwargs):
            self.received.append(('entryCreate', kwargs['entry'].name))

        def onEntryComplete(**kwargs):
            self.received.append(('entryComplete', kwargs['state'].uncompressedSize))

        def onEmission(**kwargs):
            self.received.append(('emission', kwargs['offset'], len(kwargs['data'])))

        def onFinalize(**kwargs):
            self.received.append(('finalize', len(kwargs['entries'])))

        def onFailure(**kwargs):
            self.received.append(('failure', type(kwargs['error']).__name__, kwargs['index']))

        self.observers = [
            (StreamEvent.entryCreate, onEntryCreate),
            (StreamEvent.entryComplete, onEntryComplete),
            (StreamEvent.emission, onEmission),
            (StreamEvent.finalize, onFinalize),
            (StreamEvent.failure, onFailure),
        ]
        for event, observer in self.observers:
            event.subscribe(observer)

    def tearDown(self):
        for event, observer in self.observers:
            event.unsubscribe(observer)

    def testEventsInOrder(self):
        fetcher = FakeFetcher({'http://upstream/a.bin': b'abc'})
        orchestrator = StreamOrchestrator(makeManifest('a.bin'), fetcher)
        emissions = list(orchestrator.iterEmissions())

        self.assertEqual(self.received, [
            ('entryCreate', 'a.bin'),
            ('entryComplete', 3),
            ('emission', 0, len(emissions[0])),
            ('finalize', 1),
            ('emission', len(emissions[0]), len(emissions[1])),
        ])
        print("[OK] Stream events published in order")

    def testFailureEvent(self):
        fetcher = FakeFetcher({'http://upstream/a.bin': FetchError('boom')})
        orchestrator = StreamOrchestrator(makeManifest('a.bin'), fetcher)

        with self.assertRaises(FetchError):
            list(orchestrator.iterEmissions())

        self.assertEqual(self.received, [('entryCreate', 'a.bin'), ('failure', 'FetchError', 0)])


if __name__ == '__main__':
    unittest.main()
