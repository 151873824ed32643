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

import time
import logging

from tqdm import tqdm

from zipstreamer.Utils import formatSize, ONE_MB


class BitmathTqdm(tqdm):
    """tqdm bar that formats sizes and rates with formatSize."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d

    def __bool__(self):
        # total may be None (archive size unknown up front)
        return hasattr(self, 'n')


class Progress:
    """
    Tracks bytes emitted for an archive whose final size is not known in advance.
    Either drives a tqdm bar (useBar) or reports through loggerCallback every logInterval seconds.
    """

    def __init__(self, totalSize=0, sizeFormatter=None, loggerCallback=print, logInterval=2.0, useBar=False,
                 description='Archive'):
        self.totalSize = totalSize
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar
        self.description = description

        self.transferred = 0
        self.lastProgressTime = time.monotonic()
        self.lastProgressBytes = 0

        self.pbar = None
        if self.useBar:
            self.pbar = BitmathTqdm(
                total=self.totalSize or None,
                desc=self.description,
                sizeFormatter=self.sizeFormatter,
                leave=True,
                ncols=100,
            )

    def update(self, bytesTransferred, forceLog=False, extraText=""):
        """Update progress with the running total of bytes transferred."""
        previousTransferred = self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.useBar and self.pbar:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)
            self.pbar.set_postfix_str(f" {extraText}" if extraText else "")
            return

        if self._shouldLog(forceLog, currentTime):
            self._logProgress(currentTime, extraText)

    def _shouldLog(self, forceLog, currentTime):
        return (
            forceLog or (self.transferred and self.transferred % (5 * ONE_MB) == 0) or
            (currentTime - self.lastProgressTime) >= self.logInterval
        )

    def _logProgress(self, currentTime, extraText):
        speedDisplay = self.sizeFormatter(int(self.getSpeed(currentTime)))

        progressMsg = f'{self.description}: {self.sizeFormatter(self.transferred)}, {speedDisplay}/sec'
        if extraText:
            progressMsg += f', {extraText}'

        self.loggerCallback(progressMsg)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getSpeed(self, currentTime=None):
        """Transfer speed in bytes per second since the last report."""
        currentTime = currentTime or time.monotonic()
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes

        return bytesDelta / timeDelta if timeDelta > 0 else 0

    def finishBar(self):
        if self.useBar and self.pbar:
            try:
                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logging.getLogger(__name__).debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar()
