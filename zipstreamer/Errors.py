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

# =============================================================================
# Stream Exception Classes
# =============================================================================


class ZipStreamError(RuntimeError):
    """Base exception for every error that aborts a streaming request"""
    pass


class ManifestError(ZipStreamError):
    """Raised when the manifest cannot be read or parsed (the stream never starts)"""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class FetchError(ZipStreamError):
    """Raised when one resource cannot be fetched; fatal to the whole archive"""

    def __init__(self, message, url=None, statusCode=None):
        super().__init__(message)
        self.url = url
        self.statusCode = statusCode


class WriteError(ZipStreamError):
    """Raised when an archive-format invariant is violated, e.g. writing after finalize"""
    pass


class EmissionError(ZipStreamError):
    """Raised when the consumer disconnects or the archive sink cannot be read"""
    pass
