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
import json
import logging
import tempfile
import unittest

from unittest.mock import patch

from zipstreamer.Kernel import (
    Event, EventService, EventTiming, SecretGetter, Singleton, StorageLocator, StreamEvent, getLogger
)


class EventServiceTest(unittest.TestCase):

    def setUp(self):
        self.event = Event('/test/kernel/create')
        self.received = []

    def tearDown(self):
        EventService.getInstance().unregister(self.event.key)

    def testSubscribeAndTrigger(self):

        def onCreate(**kwargs):
            self.received.append(kwargs)

        self.event.subscribe(onCreate)
        self.event.trigger(name='a.bin', size=3)

        self.assertEqual(self.received, [{'name': 'a.bin', 'size': 3}])

        self.event.unsubscribe(onCreate)
        self.event.trigger(name='b.bin', size=1)
        self.assertEqual(len(self.received), 1)
        print("[OK] Event subscribe/trigger/unsubscribe")

    def testTiming(self):
        order = []

        def before(**kwargs):
            order.append('before')

        def after(**kwargs):
            order.append('after')

        self.event.subscribe(after, timing=EventTiming.AFTER)
        self.event.subscribe(before, timing='before')

        self.event.trigger()
        self.assertEqual(order, ['before', 'after'])

        order.clear()
        self.event.trigger(timing=EventTiming.AFTER)
        self.assertEqual(order, ['after'])

    def testInvalidTiming(self):
        self.event.register()
        with self.assertRaises(ValueError):
            self.event.subscribe(lambda **kwargs: None, timing='DURING')

    def testSubscribeUnregistered(self):
        with self.assertRaises(KeyError):
            EventService.getInstance().subscribe('/test/kernel/unknown', lambda **kwargs: None)

    def testTriggerUnregisteredIsNoop(self):
        EventService.getInstance().trigger('/test/kernel/unknown', value=1)

    def testStreamEventsRegistered(self):
        eventService = EventService.getInstance()
        for event in StreamEvent.all():
            self.assertTrue(eventService.isRegistered(event.key))


class SingletonTest(unittest.TestCase):

    def testSingleInstance(self):

        class Counter(Singleton):

            def initialize(self, start=0):
                self.value = start

        first = Counter(start=5)
        second = Counter(start=10)

        self.assertIs(first, second)
        self.assertIs(Counter.getInstance(), first)
        self.assertEqual(second.value, 5)


class StorageTest(unittest.TestCase):

    def testFindStorageFromEnvLocation(self):
        with tempfile.TemporaryDirectory() as tempDir:
            path = os.path.join(tempDir, '.env')
            with open(path, 'w') as f:
                f.write('A=1\n')

            with patch.dict(os.environ, {'ZIPSTREAM_STORAGE_LOCATION': tempDir}):
                self.assertEqual(StorageLocator.getInstance().findConfig('.env'), path)
                # Missing files resolve inside the override directory too
                self.assertEqual(
                    StorageLocator.getInstance().findStorage('.absent'), os.path.join(tempDir, '.absent')
                )

    def testSecretFromEnvironment(self):
        with patch.dict(os.environ, {'ZIPSTREAM_TEST_SECRET': 'token'}):
            self.assertEqual(SecretGetter.getInstance().get('ZIPSTREAM_TEST_SECRET'), 'token')

    def testSecretFromFile(self):
        with tempfile.TemporaryDirectory() as tempDir:
            with open(os.path.join(tempDir, '.secret'), 'w') as f:
                json.dump({'ZIPSTREAM_FILE_SECRET': 'from-file'}, f)

            secretGetter = SecretGetter.getInstance()
            secretGetter._secretData = None

            try:
                with patch.dict(os.environ, {'ZIPSTREAM_STORAGE_LOCATION': tempDir}):
                    self.assertEqual(secretGetter.get('ZIPSTREAM_FILE_SECRET'), 'from-file')
            finally:
                secretGetter._secretData = None
                secretGetter._cache.clear()


class LoggerTest(unittest.TestCase):

    def testGetLoggerWithoutDSN(self):
        with patch.object(SecretGetter.getInstance(), 'get', return_value=None):
            logger = getLogger('zipstreamer.test')

        self.assertIsInstance(logger, (logging.Logger, logging.LoggerAdapter))
        logger.debug("logger works without a Sentry DSN")


if __name__ == '__main__':
    unittest.main()
