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
import functools
import html
import threading

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlparse, urlunparse

from zipstreamer.Errors import ManifestError, ZipStreamError
from zipstreamer.Fetcher import ResourceFetcher
from zipstreamer.Kernel import getLogger, PUBLIC_VERSION
from zipstreamer.Manifest import loadManifest
from zipstreamer.Orchestrator import StreamOrchestrator
from zipstreamer.Progress import Progress
from zipstreamer.Settings import (
    SettingsGetter, DEFAULT_ARCHIVE_NAME, DEFAULT_COMPRESSION, DEFAULT_SINK, DEFAULT_STREAM_PATH, DRAIN_THRESHOLD,
    DEFLATE_LEVEL, FETCH_CHUNK_SIZE, FETCH_TIMEOUT, FORCE_ZIP64
)
from zipstreamer.Sink import ArchiveSink
from zipstreamer.Utils import flushPrint, formatSize

LOG_OUTPUT_DURATION = 2 # Seconds

DISCONNECT_ERRORS = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)

logger = getLogger(__name__)


def isMarkupType(mediaType: str) -> bool:
    """True for media types the HTML error page can be served as (HTML, XML or any)."""
    mediaType = mediaType.lower()
    return mediaType in ('*/*', 'text/*') or 'html' in mediaType or mediaType.endswith('xml') or '+xml' in mediaType


def preferredMediaType(accept: Optional[str]) -> Optional[str]:
    """First media type listed in an Accept header, without parameters."""
    if not accept:
        return None

    first = accept.split(',')[0].split(';')[0].strip()
    return first or None


def renderNotFound(path: str, accept: Optional[str], streamPath: str = DEFAULT_STREAM_PATH) -> str:
    mediaType = preferredMediaType(accept)
    if mediaType and not isMarkupType(mediaType):
        return f"<p>'{html.escape(mediaType)}' requests are not supported.</p>"

    return f"<p>Sorry, '{html.escape(path)}' is an invalid path! Try {html.escape(streamPath)} instead.</p>"


class StreamHandler(BaseHTTPRequestHandler):

    protocol_version = 'HTTP/1.1'
    server_version = f'ZipStreamer/{PUBLIC_VERSION}'

    def __init__(self, request, clientAddress, server):
        self.getPathMap = {
            server.streamPath: self._handleStream,
        }

        self.headPathMap = {
            server.streamPath: self._handleStreamHead,
        }

        super().__init__(request, clientAddress, server)

    def log_message(self, format, *args):
        logger.debug(f"Stream request: {format % args}")

    def _normalizeRequestPath(self):
        return urlparse(self.path).path

    def do_GET(self):
        path = self._normalizeRequestPath()

        handler = self.getPathMap.get(path, self._handleNotFound)
        try:
            handler()
        finally:
            self.close_connection = True

    def do_HEAD(self):
        path = self._normalizeRequestPath()

        handler = self.headPathMap.get(path, self._handleNotFoundHead)
        try:
            handler()
        finally:
            self.close_connection = True

    def _sendBytes(self, code, payload: bytes, ctype: str = "text/plain; charset=utf-8", body=True):
        self.send_response(code)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("Connection", "close")
        self.end_headers()
        if body:
            self.wfile.write(payload)

    def _handleNotFound(self, body=True):
        page = renderNotFound(self.path, self.headers.get('Accept'), self.server.streamPath)
        self._sendBytes(HTTPStatus.NOT_FOUND, page.encode('utf-8'), "text/html; charset=utf-8", body=body)

    def _handleNotFoundHead(self):
        self._handleNotFound(body=False)

    def _sendStreamHeaders(self):
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "application/zip")
        self.send_header("Content-Disposition", f'attachment; filename="{self.server.archiveName}"')
        self.send_header("Transfer-Encoding", "chunked")
        self.send_header("Cache-Control", "no-store")
        self.send_header("Connection", "close")
        self.end_headers()

    def _handleStreamHead(self):
        self._sendStreamHeaders()

    def _writeChunk(self, data: bytes):
        self.wfile.write(b'%X\r\n%s\r\n' % (len(data), data))
        self.wfile.flush()

    def _handleStream(self):
        try:
            manifest = loadManifest(self.server.manifestPath)
        except ManifestError as e:
            logger.error(f"Unable to load manifest: {e}")
            self._sendBytes(HTTPStatus.INTERNAL_SERVER_ERROR, f"{e}\n".encode('utf-8'))
            return

        written = 0
        progress = Progress(
            sizeFormatter=formatSize,
            loggerCallback=self.server.loggerCallback,
            logInterval=LOG_OUTPUT_DURATION,
            description=f'Streaming {self.server.archiveName}',
        )

        fetcher = None
        orchestrator = None
        try:
            self._sendStreamHeaders()
            self.server.loggerCallback(
                f'[{self.date_time_string()}] Streaming {len(manifest)} entries to {self.client_address[0]}'
            )

            fetcher = self.server.createFetcher()
            orchestrator = self.server.createOrchestrator(manifest, fetcher)

            for emission in orchestrator.iterEmissions():
                self._writeChunk(emission)
                written += len(emission)
                progress.update(written)

            # Terminating chunk only once the archive is complete.
            self.wfile.write(b'0\r\n\r\n')
            self.wfile.flush()

            progress.update(written, forceLog=True)
            self.server.doAfterStream(written)
        except DISCONNECT_ERRORS as ce:
            logger.warning(f"Client disconnected after {formatSize(written)}: {ce}")
        except ZipStreamError as e:
            # Headers are already out, the truncated body is the only signal left.
            logger.error(f"Stream aborted after {formatSize(written)}: {e}")
        finally:
            if orchestrator is not None:
                orchestrator.close()
            if fetcher is not None:
                fetcher.close()

    def date_time_string(self, timestamp=None):
        if timestamp:
            return super().date_time_string(timestamp)
        else:
            return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class Server(ThreadingHTTPServer):
    """
    HTTP server exposing the archive stream.

    Example:
        server = createServer('127.0.0.1', 0, manifestPath='sample_archive.json')
        server.start()
        print(server.getStreamURL())
        ...
        server.stop()
    """

    request_queue_size = 16
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        serverAddress,
        manifestPath,
        compression=DEFAULT_COMPRESSION,
        sink=DEFAULT_SINK,
        archiveName=DEFAULT_ARCHIVE_NAME,
        streamPath=DEFAULT_STREAM_PATH,
        chunkSize=FETCH_CHUNK_SIZE,
        fetchTimeout=FETCH_TIMEOUT,
        drainThreshold=DRAIN_THRESHOLD,
        deflateLevel=DEFLATE_LEVEL,
        forceZip64=FORCE_ZIP64,
        requestHandlerClass=None,
        fetcherFactory=None,
        loggerCallback=flushPrint,
    ):
        self.manifestPath = manifestPath
        self.compression = compression
        self.sink = sink
        self.archiveName = archiveName
        self.streamPath = streamPath
        self.chunkSize = chunkSize
        self.fetchTimeout = fetchTimeout
        self.drainThreshold = drainThreshold
        self.deflateLevel = deflateLevel
        self.forceZip64 = forceZip64
        self.fetcherFactory = fetcherFactory
        self.loggerCallback = loggerCallback

        self.streamCount = 0
        self._countLock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        if requestHandlerClass is None:
            requestHandlerClass = StreamHandler

        super().__init__(serverAddress, requestHandlerClass)

        self.host = serverAddress[0]
        self.port = self.server_address[1] # Actual port when 0 was passed

    def createFetcher(self):
        if self.fetcherFactory:
            return self.fetcherFactory()
        return ResourceFetcher(chunkSize=self.chunkSize, timeout=self.fetchTimeout)

    def createOrchestrator(self, manifest, fetcher):
        return StreamOrchestrator(
            manifest,
            fetcher,
            compression=self.compression,
            sinkFactory=functools.partial(ArchiveSink.build, self.sink),
            drainThreshold=self.drainThreshold,
            deflateLevel=self.deflateLevel,
            forceZip64=self.forceZip64,
        )

    def doAfterStream(self, size):
        with self._countLock:
            self.streamCount += 1
        logger.info(f"Archive #{self.streamCount} delivered ({formatSize(size)})")

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling request from {client_address[0]}")

    def start(self):
        """Serve in a background thread."""
        if self._running:
            raise RuntimeError("Server already running")

        self._running = True
        self._thread = threading.Thread(target=self.serve_forever, kwargs={'poll_interval': 0.5}, daemon=True)
        self._thread.start()

        logger.debug(f"Stream server started on {self.host}:{self.port}{self.streamPath}")

    def stop(self):
        if not self._running:
            return

        self._running = False
        self.shutdown()
        self.server_close()

        if self._thread:
            self._thread.join(timeout=5.0)

        logger.debug("Stream server stopped")

    def getStreamURL(self) -> str:
        return urlunparse(('http', f'{self.host}:{self.port}', self.streamPath, '', '', ''))


def createServer(host=None, port=None, handlerClass=None, fetcherFactory=None, loggerCallback=flushPrint, **overrides):
    """
    Build a Server from SettingsGetter, with keyword overrides (manifestPath, compression, sink, ...).
    """
    settingsGetter = SettingsGetter.getInstance()

    options = {
        'manifestPath': settingsGetter.manifestPath,
        'compression': settingsGetter.compression,
        'sink': settingsGetter.sink,
        'archiveName': settingsGetter.archiveName,
        'streamPath': settingsGetter.streamPath,
        'chunkSize': settingsGetter.chunkSize,
        'fetchTimeout': settingsGetter.fetchTimeout,
        'drainThreshold': settingsGetter.drainThreshold,
        'deflateLevel': settingsGetter.deflateLevel,
        'forceZip64': settingsGetter.forceZip64,
    }
    options.update({key: value for key, value in overrides.items() if value is not None})

    serverAddress = (host or settingsGetter.host, settingsGetter.port if port is None else port)
    return Server(
        serverAddress,
        requestHandlerClass=handlerClass,
        fetcherFactory=fetcherFactory,
        loggerCallback=loggerCallback,
        **options
    )
