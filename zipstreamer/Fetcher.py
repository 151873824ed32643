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

from typing import Iterator

import requests

from zipstreamer.Errors import FetchError
from zipstreamer.Kernel import PUBLIC_VERSION, getLogger
from zipstreamer.Settings import FETCH_CHUNK_SIZE, FETCH_TIMEOUT
from zipstreamer.Utils import KeepAliveAdapter, formatSize

logger = getLogger(__name__)


class ResourceFetcher:
    """
    Retrieves one resource at a time as a lazy, finite sequence of byte chunks.

    A failed connection, a non-2xx answer or a broken read raises FetchError.
    There is no retry: the caller aborts the whole archive.
    """

    USER_AGENT = f'ZipStreamer/{PUBLIC_VERSION}'

    def __init__(self, chunkSize: int = FETCH_CHUNK_SIZE, timeout=FETCH_TIMEOUT, session: requests.Session = None):
        if chunkSize <= 0:
            raise ValueError(f"Invalid chunk size: {chunkSize}")

        self.chunkSize = chunkSize
        self.timeout = timeout or None
        self._ownsSession = session is None

        if session is None:
            session = requests.Session()
            adapter = KeepAliveAdapter()
            session.mount('http://', adapter)
            session.mount('https://', adapter)
            session.headers['User-Agent'] = self.USER_AGENT

        self.session = session

    def fetch(self, url: str) -> Iterator[bytes]:
        """
        Stream the body of `url`.

        Args:
            url: Resource URL

        Yields:
            bytes: Non-empty chunks of at most chunkSize bytes

        Raises:
            FetchError: Connection, status or read failure
        """
        logger.debug(f"Fetching {url}")

        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"Failed to connect to {url}: {e}", url=url) from e

        received = 0
        try:
            if not 200 <= response.status_code < 300:
                raise FetchError(
                    f"Failed to fetch {url}: HTTP {response.status_code} {response.reason}",
                    url=url,
                    statusCode=response.status_code
                )

            for chunk in response.iter_content(chunk_size=self.chunkSize):
                if not chunk:
                    continue

                received += len(chunk)
                yield chunk

        except requests.RequestException as e:
            raise FetchError(
                f"Failed to read {url} after {formatSize(received)}: {e}", url=url, statusCode=response.status_code
            ) from e
        finally:
            response.close()

        logger.debug(f"Fetched {url} ({formatSize(received)})")

    def close(self):
        if self._ownsSession:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()
