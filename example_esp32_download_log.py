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

import time
from DroneBridgeLogTransfer import db_connect_log_transfer

# Example script that lists all logs of a flight controller connected to a DroneBridge ESP32
# and downloads the most recent one. Chunks are streamed to the file as they arrive.

# --- Configuration ---
# Replace with your connection string (e.g., 'udpin:0.0.0.0:14550' or a serial port)
CONNECTION_STRING = 'tcp:192.168.10.21:5760'
# Target system ID (usually 1 for the autopilot)
TARGET_SYSTEM = 1
# Target component ID (usually 1 for the main autopilot component)
TARGET_COMPONENT = 1
# Give up if no entry/chunk arrives for this many seconds
TIMEOUT = 10

transfer = db_connect_log_transfer(CONNECTION_STRING, target_system=TARGET_SYSTEM, target_component=TARGET_COMPONENT)
if transfer is None:
    print("Could not connect to the flight controller. Please check the logs above for more information.")
    exit(1)

with transfer:
    # 1. Request the log list
    # --------------
    list_goal = transfer.start_list_operation(0, 0xffff)
    for entry in list_goal.stream(timeout=TIMEOUT):
        print(f"Received LOG_ENTRY: ID={entry.id}, Size={entry.size_bytes} bytes, Time={entry.time_utc}")
    list_result = list_goal.result()
    if list_result is None or not list_result.success:
        print("No complete log list received.")
        list_goal.cancel()
        exit(1)
    if not list_result.records:
        print("The flight controller reported no log entries.")
        exit(0)

    # 2. Download the newest log
    # --------------
    newest = max(list_result.records, key=lambda e: e.id)
    file_name = f"log_{newest.id}.bin"
    print(f"\nDownloading log {newest.id} ({newest.size_bytes} bytes) to {file_name}")
    start_time = time.time()
    fetch_goal = transfer.start_fetch_operation(newest.id, 0, newest.size_bytes)
    with open(file_name, 'wb') as f:
        for chunk in fetch_goal.stream(timeout=TIMEOUT):
            f.seek(chunk.offset)
            f.write(chunk.data)

    fetch_result = fetch_goal.result()
    if fetch_result is None:
        print("Download stalled. Canceling.")
        fetch_goal.cancel()
        exit(1)
    if not fetch_result.success:
        print(f"Download failed: {fetch_result.status.value} - {fetch_result.reason}")
        exit(1)
    print(f"Downloaded log {newest.id} in {time.time() - start_time:.1f}s")
