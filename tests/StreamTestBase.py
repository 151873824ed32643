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

import io
import threading
import zipfile

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


class FakeFetcher:
    """In-memory fetcher: url -> bytes, or an exception raised when fetched."""

    def __init__(self, resources, chunkSize=4):
        self.resources = resources
        self.chunkSize = chunkSize
        self.fetched = []
        self.closed = False

    def fetch(self, url):
        self.fetched.append(url)

        resource = self.resources[url]
        if isinstance(resource, Exception):
            raise resource

        for i in range(0, len(resource), self.chunkSize):
            yield resource[i:i + self.chunkSize]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()


class ResourceHandler(BaseHTTPRequestHandler):

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        self.server.requested.append(self.path)

        resource = self.server.resources.get(self.path)
        if resource is None:
            self.send_response(HTTPStatus.NOT_FOUND)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return

        # (status, body) answers a fixed status without any extra headers
        status = HTTPStatus.OK
        if isinstance(resource, tuple):
            status, resource = resource

        self.send_response(status)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(len(resource)))
        self.end_headers()
        self.wfile.write(resource)


class ResourceServer(ThreadingHTTPServer):
    """Local upstream serving fixed resources by path"""

    daemon_threads = True

    def __init__(self, resources):
        super().__init__(('127.0.0.1', 0), ResourceHandler)
        self.resources = resources
        self.requested = []
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self.serve_forever, kwargs={'poll_interval': 0.1}, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self.shutdown()
        self.server_close()
        self._thread.join(timeout=5.0)

    def urlFor(self, path):
        return f'http://127.0.0.1:{self.server_address[1]}{path}'


def readArchive(data):
    """Decode archive bytes into an ordered list of (name, content, compressType)."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.testzip() is None
        return [(info.filename, archive.read(info), info.compress_type) for info in archive.infolist()]
