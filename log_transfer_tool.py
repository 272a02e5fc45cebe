# MIT License
#
# Copyright (c) 2025 Wolfgang Christl
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import argparse
import logging
import sys

import serial.tools.list_ports
from tqdm import tqdm

from DroneBridgeLogTransfer import DBLogger, db_connect_log_transfer, DEFAULT_CONNECTION_STRING, \
    DEFAULT_SOURCE_SYSTEM

# Seconds without any new entry/chunk after which an operation is given up
DEFAULT_OPERATION_TIMEOUT = 10
# All logs the device has
LIST_ALL_END_ID = 0xffff


def db_cli_list_ports():
    """Prints the serial ports a flight controller or ESP32 may be attached to"""
    ports = serial.tools.list_ports.comports()
    if not ports:
        print("No serial ports found.")
        return
    print("Available serial ports:")
    for port in ports:
        print(f"  {port.device} - {port.description}")


def db_cli_list_logs(transfer, start_id=0, end_id=LIST_ALL_END_ID, timeout=DEFAULT_OPERATION_TIMEOUT):
    """
    Lists the logs of the device.

    :return: List of LogEntrySummary or None if listing failed
    """
    logger = DBLogger()
    goal = transfer.start_list_operation(start_id, end_id)
    for _ in goal.stream(timeout=timeout):
        pass
    result = goal.result()
    if result is None:
        logger.log(f"No log entries received within {timeout}s", logging.ERROR)
        goal.cancel()
        return None
    if not result.success:
        logger.log(f"Listing logs failed ({result.status.value}): {result.reason}", logging.ERROR)
        return None
    return result.records


def db_cli_download_log(transfer, log_id, output_path, offset=0, count=None, timeout=DEFAULT_OPERATION_TIMEOUT) -> bool:
    """
    Downloads a log into output_path. Every chunk is written at its offset so gaps stay zero filled.

    :param count: Number of bytes to fetch. Looked up from the log list if not given.
    :return: True in case of success, False otherwise.
    """
    logger = DBLogger()
    if count is None:
        entries = db_cli_list_logs(transfer, log_id, log_id, timeout=timeout)
        matching = [entry for entry in entries or [] if entry.id == log_id]
        if not matching:
            logger.log(f"Log {log_id} not found on the device", logging.ERROR)
            return False
        count = max(0, matching[0].size_bytes - offset)

    goal = transfer.start_fetch_operation(log_id, offset, count)
    try:
        with open(output_path, 'wb') as f, tqdm(total=count, unit='B', unit_scale=True,
                                                desc=f'Log {log_id}') as progress:
            for chunk in goal.stream(timeout=timeout):
                f.seek(chunk.offset - offset)
                f.write(chunk.data)
                progress.update(len(chunk.data))
    except KeyboardInterrupt:
        goal.cancel()
        logger.log("Download canceled by user", logging.WARNING)
        return False

    result = goal.result()
    if result is None:
        logger.log(f"No log data received within {timeout}s. Canceling download.", logging.ERROR)
        goal.cancel()
        return False
    if not result.success:
        logger.log(f"Download of log {log_id} failed ({result.status.value}): {result.reason}", logging.ERROR)
        return False
    logger.log(f"Saved log {log_id} to {output_path}")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='List and download logs from a MAVLink device.')
    parser.add_argument('--connection', default=DEFAULT_CONNECTION_STRING, type=str,
                        help=f"pymavlink connection string e.g. tcp:192.168.10.21:5760 or /dev/ttyUSB0 "
                             f"(default: {DEFAULT_CONNECTION_STRING})")
    parser.add_argument('--source-system', default=DEFAULT_SOURCE_SYSTEM, type=int,
                        help="MAVLink system ID of this ground station")
    parser.add_argument('--target-system', required=False, type=int,
                        help="System ID of the device holding the logs. Taken from the heartbeat if not set")
    parser.add_argument('--target-component', required=False, type=int,
                        help="Component ID of the device holding the logs. Taken from the heartbeat if not set")
    parser.add_argument('--log-dir', required=False, type=str, help="Also write the tool's output to a log file there")
    parser.add_argument('--list-ports', action='store_true', help="List available serial ports and exit")
    subparsers = parser.add_subparsers(dest='command')

    list_parser = subparsers.add_parser('list', help="List the logs stored on the device")
    list_parser.add_argument('--start', default=0, type=int, help="First log ID")
    list_parser.add_argument('--end', default=LIST_ALL_END_ID, type=int, help="Last log ID")
    list_parser.add_argument('--timeout', default=DEFAULT_OPERATION_TIMEOUT, type=float)

    download_parser = subparsers.add_parser('download', help="Download a log from the device")
    download_parser.add_argument('log_id', type=int)
    download_parser.add_argument('--offset', default=0, type=int, help="First byte to fetch")
    download_parser.add_argument('--count', required=False, type=int,
                                 help="Number of bytes to fetch. Defaults to the rest of the log")
    download_parser.add_argument('--output', required=False, type=str, help="Defaults to log_<log_id>.bin")
    download_parser.add_argument('--timeout', default=DEFAULT_OPERATION_TIMEOUT, type=float)
    args = parser.parse_args(argv)

    logger = DBLogger()
    if args.log_dir:
        logger.create_log_file(args.log_dir, log_file_prefix="log_transfer_tool")

    if args.list_ports:
        db_cli_list_ports()
        return 0
    if args.command is None:
        parser.print_help()
        return 1

    transfer = db_connect_log_transfer(args.connection, source_system=args.source_system,
                                       target_system=args.target_system, target_component=args.target_component)
    if transfer is None:
        return 1

    with transfer:
        if args.command == 'list':
            entries = db_cli_list_logs(transfer, args.start, args.end, timeout=args.timeout)
            if entries is None:
                return 1
            print(f"Found {len(entries)} logs")
            for entry in entries:
                print(f"Log ID: {entry.id:<5} | Size: {entry.size_bytes} bytes | Time (UTC): {entry.time_utc}")
            return 0

        output_path = args.output or f"log_{args.log_id}.bin"
        if db_cli_download_log(transfer, args.log_id, output_path, offset=args.offset, count=args.count,
                               timeout=args.timeout):
            return 0
        return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExiting log transfer tool.")
