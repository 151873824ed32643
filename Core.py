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

import platform
import sys
import os
import argparse
import signal

import requests
import certifi

from zipstreamer.Kernel import getLogger
from zipstreamer.Errors import ZipStreamError
from zipstreamer.Settings import SettingsGetter
from zipstreamer.CLI import (
    configureCLIParser, loadEnvFile, preprocessArguments, processArgumentsAndCommands, processGlobalArguments
)
from zipstreamer.Utils import flushPrint, sendException, getEnv

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():

    # .env must be loaded before any configuration is read
    loadEnvFile()

    if platform.system().lower() != 'windows':
        os.environ["SSL_CERT_FILE"] = certifi.where()

    return SettingsGetter(
        manifestPath=getEnv('MANIFEST_PATH', None),
        compression=getEnv('ARCHIVE_COMPRESSION', None),
        sink=getEnv('ARCHIVE_SINK', None),
        archiveName=getEnv('ARCHIVE_NAME', None),
        streamPath=getEnv('STREAM_PATH', None),
        chunkSize=getEnv('FETCH_CHUNK_SIZE', 0) or None,
        fetchTimeout=getEnv('FETCH_TIMEOUT', 0.0) if os.getenv('FETCH_TIMEOUT') else None,
        drainThreshold=getEnv('DRAIN_THRESHOLD', 0) if os.getenv('DRAIN_THRESHOLD') else None,
        deflateLevel=getEnv('DEFLATE_LEVEL', 0) if os.getenv('DEFLATE_LEVEL') else None,
        forceZip64=getEnv('FORCE_ZIP64', False) if os.getenv('FORCE_ZIP64') else None,
        host=getEnv('SERVER_HOST', None),
        port=getEnv('SERVER_PORT', 0) if os.getenv('SERVER_PORT') else None,
        platform=platform.system(),
    )


def main(argv=None):
    """Parse the command line in two phases (global options, then the command) and run it"""
    setupSettings()

    parser, globalsParent, commandNames = configureCLIParser()
    argv = sys.argv[1:] if argv is None else list(argv)

    # Phase 1: global options
    try:
        globalArgs, _ = globalsParent.parse_known_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    exitCode = processGlobalArguments(globalArgs)
    if exitCode is not None:
        return exitCode

    # Phase 2: default command, then final parsing
    argv = preprocessArguments(argv, commandNames, globalsParent)
    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    try:
        return processArgumentsAndCommands(args)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0


def run():
    setupGracefulShutdown()

    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except ZipStreamError as e:
        sendException(logger, e, errorPrefix='Unable to build the archive')
        sys.exit(1)
    except (requests.exceptions.ConnectionError, ConnectionError) as e:
        sendException(logger, e, errorPrefix='Failed to connect server')
        sys.exit(1)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)


if __name__ == '__main__':
    run()
