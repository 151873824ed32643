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

import argparse
import json
import os
import logging
import logging.config
import platform

from zipstreamer.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel, StorageLocator, LOG_LEVEL_MAPPING
from zipstreamer.Settings import SettingsGetter, COMPRESSIONS, SINK_BACKENDS
from zipstreamer.Utils import flushPrint, formatSize, getEnv
from zipstreamer.Fetcher import ResourceFetcher
from zipstreamer.Manifest import loadManifest
from zipstreamer.Orchestrator import StreamOrchestrator
from zipstreamer.Progress import Progress
from zipstreamer.Server import createServer
from zipstreamer.Sink import ArchiveSink

DEFAULT_COMMAND = 'serve'

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from a .env file found by StorageLocator.
    Variables already defined in os.environ are left untouched.
    """
    storageLocator = StorageLocator.getInstance()
    envFilePath = storageLocator.findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        logger.debug(f'Loading .env file from: {envFilePath}')

        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if (value.startswith('"') and value.endswith('"')) or \
                   (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.debug(f'Loaded {loadedCount} environment variables from .env')

    except OSError as e:
        flushPrint(f'Error: Unable to read .env file {envFilePath}: {e}')
        logger.error(f'Unable to read .env file: {e}', exc_info=True)

    return loadedCount


def configureLogging(logLevel):
    """Configure logging from a level name or a logging config JSON file.

    Priority order:
    1. logLevel parameter (from --log-level)
    2. ZIPSTREAM_LOGGING_LEVEL environment variable
    3. None (leave logging untouched)
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('ZIPSTREAM_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"ZipStreamer v{PUBLIC_VERSION}")
    flushPrint("")

    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")

    settingsGetter = SettingsGetter.getInstance()
    flushPrint(f"Support: {settingsGetter.getSupportURL()}")


def configureCLIParser():
    """Configure the parser with a global parent shared by every command

    Returns:
        tuple: (parser, globalsParent, commandNames)
    """

    def validatePort(portStr):
        try:
            port = int(portStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")

        if not (0 <= port <= 65535):
            raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (0-65535)")
        return port

    def validateLogLevel(logLevel):
        # Allow file paths (they'll be validated later)
        if os.path.exists(logLevel):
            return logLevel

        validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if logLevel.upper() not in validLevels:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
            )
        return logLevel.upper()

    def addArchiveOptions(parser):
        parser.add_argument(
            "--compression",
            choices=COMPRESSIONS,
            help="Compression method applied to every entry (default: ARCHIVE_COMPRESSION or store)",
        )
        parser.add_argument(
            "--sink",
            choices=SINK_BACKENDS,
            help="Where the archive is assembled before it is emitted (default: ARCHIVE_SINK or memory)",
        )

    # === 1) Global parameters in a parent parser ===
    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    # === 2) Main parser + subparsers; all inherit from globalsParent ===
    parser = argparse.ArgumentParser(
        prog="zipstreamer",
        description="ZipStreamer streams remote files into a single ZIP archive.",
        parents=[globalsParent],
        exit_on_error=False,
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    serveSubparser = subparsers.add_parser(
        'serve', help='Serve the archive stream over HTTP (default command)', parents=[globalsParent],
        exit_on_error=False
    )
    serveSubparser.add_argument("--host", metavar="HOST", help="Listen address (default: SERVER_HOST or 127.0.0.1)")
    serveSubparser.add_argument(
        "--port", type=validatePort, metavar="PORT", help="Listen port (default: SERVER_PORT or 8000, 0 picks one)"
    )
    serveSubparser.add_argument(
        "--manifest", metavar="MANIFEST", help="Manifest JSON file (default: MANIFEST_PATH or sample_archive.json)"
    )
    addArchiveOptions(serveSubparser)

    buildSubparser = subparsers.add_parser(
        'build', help='Build the archive locally into a file', parents=[globalsParent], exit_on_error=False
    )
    buildSubparser.add_argument("manifest", metavar="MANIFEST", help="Manifest JSON file")
    buildSubparser.add_argument("--output", "-o", metavar="PATH", required=True, help="Output ZIP file path")
    addArchiveOptions(buildSubparser)

    commandNames = {'serve', 'build'}
    return parser, globalsParent, commandNames


def preprocessArguments(argv, commandNames, globalsParent):
    """
    Insert the default 'serve' command when no command is given.

    Args:
        argv: Command-line argument list (sys.argv[1:])
        commandNames: Set of valid command names
        globalsParent: Global arguments parser (to skip over global options)

    Returns:
        list: argv ready for final parsing
    """
    argv = argv.copy()

    globalOptions = set()
    globalOptionsWithValues = set()
    for action in globalsParent._actions:
        for opt in action.option_strings:
            globalOptions.add(opt)
            if not isinstance(action, argparse._StoreConstAction):
                globalOptionsWithValues.add(opt)

    i = 0
    while i < len(argv):
        arg = argv[i]

        if '=' in arg and arg.split('=', 1)[0] in globalOptions:
            i += 1
            continue

        if arg in globalOptions:
            i += 2 if arg in globalOptionsWithValues else 1
            continue

        break

    if i >= len(argv) or (argv[i] not in commandNames and argv[i] not in ('-h', '--help')):
        argv.insert(min(i, len(argv)), DEFAULT_COMMAND)
        logger.debug(f"Auto-inserted '{DEFAULT_COMMAND}' command")

    return argv


def processGlobalArguments(globalArgs):
    """
    Handle global options before the command runs.

    Returns:
        int or None: Exit code for an early exit, None to continue
    """
    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    return None


def runServe(args):
    settingsGetter = SettingsGetter.getInstance()
    settingsGetter.update(
        manifestPath=args.manifest, compression=args.compression, sink=args.sink, host=args.host, port=args.port
    )

    server = createServer()
    flushPrint(f'Serving {settingsGetter.manifestPath} as {settingsGetter.archiveName}')
    flushPrint(f'Stream URL: {server.getStreamURL()}')
    flushPrint('Press Ctrl+C to stop.')

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        flushPrint('Shutting down.')
    finally:
        server.server_close()

    return 0


def runBuild(args):
    """Run the stream pipeline locally and write every emission to the output file."""
    settingsGetter = SettingsGetter.getInstance()
    settingsGetter.update(manifestPath=args.manifest, compression=args.compression, sink=args.sink)

    manifest = loadManifest(settingsGetter.manifestPath)
    written = 0

    with ResourceFetcher(chunkSize=settingsGetter.chunkSize, timeout=settingsGetter.fetchTimeout) as fetcher:
        orchestrator = StreamOrchestrator(
            manifest,
            fetcher,
            compression=settingsGetter.compression,
            sinkFactory=lambda: ArchiveSink.build(settingsGetter.sink),
            drainThreshold=settingsGetter.drainThreshold,
            deflateLevel=settingsGetter.deflateLevel,
            forceZip64=settingsGetter.forceZip64,
        )

        try:
            with Progress(useBar=True, description=os.path.basename(args.output)) as progress, \
                 open(args.output, 'wb') as output:
                for emission in orchestrator.iterEmissions():
                    output.write(emission)
                    written += len(emission)
                    progress.update(written)
        except BaseException:
            orchestrator.close()
            # A truncated archive is not a usable artifact.
            if os.path.exists(args.output):
                os.remove(args.output)
            raise

    flushPrint(f'Wrote {len(manifest)} entries to {args.output} ({formatSize(written)})')
    return 0


COMMANDS = {
    'serve': runServe,
    'build': runBuild,
}


def processArgumentsAndCommands(args):
    """
    Run the parsed command.

    Returns:
        int: Exit code
    """
    command = getattr(args, 'command', None) or DEFAULT_COMMAND
    return COMMANDS[command](args)
