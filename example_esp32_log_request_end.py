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

"""
ESP32 Log Session Reset Tool

Sends LOG_REQUEST_END to a flight controller to close a log session that was left open, e.g. by a download
tool that crashed. Most autopilots pause their own logging while a log session is open.

Configuration Constants:
    CONNECTION_STRING (str): pymavlink connection string of the DroneBridge ESP32.
    SOURCE_SYSTEM (int): The MAVLink system ID of this sender (GCS).
    TARGET_SYSTEM (int): The target system ID (usually 1 for the autopilot).
    TARGET_COMPONENT (int): The target component ID.
"""

from DroneBridgeLogTransfer import db_connect_log_transfer


# --- Configuration ---
CONNECTION_STRING = 'udpout:192.168.2.1:14555'
SOURCE_SYSTEM = 255  # GCS ID
TARGET_SYSTEM = 1
TARGET_COMPONENT = 1


def send_log_request_end():
    # No heartbeat needed, we only send
    transfer = db_connect_log_transfer(CONNECTION_STRING, source_system=SOURCE_SYSTEM, target_system=TARGET_SYSTEM,
                                       target_component=TARGET_COMPONENT, wait_heartbeat=False)
    if transfer is None:
        return False

    print(f"Sending LOG_REQUEST_END to Sys:{TARGET_SYSTEM} Comp:{TARGET_COMPONENT}")
    if transfer.request_log_end():
        print("Command sent successfully.")
        return True
    print("Failed to send command.")
    return False


if __name__ == "__main__":
    send_log_request_end()
