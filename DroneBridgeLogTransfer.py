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
DroneBridge Log Transfer

Lists and downloads the flight logs stored on a MAVLink device (autopilot or DroneBridge ESP32) using
LOG_REQUEST_LIST, LOG_REQUEST_DATA and LOG_REQUEST_END.

The device only supports one log session at a time. DBLogRetrievalCoordinator arbitrates the two long-running
operations (listing and fetching) that share that session, while every incoming LOG_ENTRY and LOG_DATA message is
republished to subscribers no matter which operation is active.
"""

import logging
import os
import queue
import struct
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Union

os.environ.setdefault('MAVLINK20', '1')  # Use MAVLink Version 2
from pymavlink import mavutil

# --- Configuration defaults ---
DEFAULT_CONNECTION_STRING = 'udpin:0.0.0.0:14550'
DEFAULT_SOURCE_SYSTEM = 255  # GCS ID
DEFAULT_TARGET_SYSTEM = 1  # Usually 1 for the autopilot
DEFAULT_TARGET_COMPONENT = 1
DEFAULT_HEARTBEAT_TIMEOUT = 10  # seconds
DEFAULT_RX_TIMEOUT = 0.5  # seconds a single recv_match call may block
DEFAULT_LOG_FILE_PREFIX = "db_log_transfer"
# Length of the data array of a MAVLink LOG_DATA message
LOG_DATA_MAX_PAYLOAD = 90
LOG_MESSAGE_TYPES = ['LOG_ENTRY', 'LOG_DATA']


class DBLogger(object):
    """
    Process-wide singleton logger. Every DBLogger() call returns the same instance.
    Messages always go to the console. After create_log_file() they are also written to a log file.
    """
    _instance = None
    _instance_lock = threading.Lock()

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                instance = super(DBLogger, cls).__new__(cls)
                instance._formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')
                instance._logger = logging.getLogger("DroneBridgeLogTransfer")
                instance._logger.setLevel(logging.DEBUG)
                instance._logger.propagate = False
                console_handler = logging.StreamHandler()
                console_handler.setLevel(logging.INFO)
                console_handler.setFormatter(instance._formatter)
                instance._logger.addHandler(console_handler)
                instance._file_handler = None
                instance.log_file_path = None
                cls._instance = instance
        return cls._instance

    def create_log_file(self, log_dir: str, log_file_prefix=DEFAULT_LOG_FILE_PREFIX) -> str:
        """
        Creates a new timestamped log file inside log_dir. Replaces a log file created earlier.

        :param log_dir: Directory to place the log file in. Created if it does not exist.
        :param log_file_prefix: Prefix of the file name e.g. "db_log_transfer" -> db_log_transfer_20250101_120000.log
        :return: Path to the log file
        """
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file_path = os.path.join(log_dir, f"{log_file_prefix}_{timestamp}.log")
        if self._file_handler is not None:
            self._logger.removeHandler(self._file_handler)
            self._file_handler.close()
        self._file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
        self._file_handler.setLevel(logging.DEBUG)
        self._file_handler.setFormatter(self._formatter)
        self._logger.addHandler(self._file_handler)
        self.log_file_path = log_file_path
        return log_file_path

    def log(self, message: str, level=logging.INFO):
        self._logger.log(level, message)


# --- Message Translator ---

class LogEntrySummary(NamedTuple):
    """One entry of the device's log list (LOG_ENTRY)"""
    id: int
    num_logs: int
    last_log_id: int
    time_utc: datetime
    size_bytes: int
    stamp: datetime  # local receive time


class LogDataChunk(NamedTuple):
    """A slice of a log's content (LOG_DATA). len(data) never exceeds the chunk capacity."""
    id: int
    offset: int
    data: bytes
    stamp: datetime  # local receive time


class ListRequest(NamedTuple):
    start_id: int
    end_id: int


class DataRequest(NamedTuple):
    id: int
    offset: int
    count: int


def db_to_entry_summary(raw) -> LogEntrySummary:
    """
    Converts a LOG_ENTRY message to a LogEntrySummary. Field copy only.

    :param raw: pymavlink LOG_ENTRY message or any object with the same fields
    """
    return LogEntrySummary(id=int(raw.id),
                           num_logs=int(raw.num_logs),
                           last_log_id=int(raw.last_log_num),
                           time_utc=datetime.fromtimestamp(int(raw.time_utc), tz=timezone.utc),
                           size_bytes=int(raw.size),
                           stamp=datetime.now(timezone.utc))


def db_to_data_chunk(raw, max_chunk_capacity=LOG_DATA_MAX_PAYLOAD) -> LogDataChunk:
    """
    Converts a LOG_DATA message to a LogDataChunk. The payload is clamped to max_chunk_capacity bytes even if the
    device reports a larger count.

    :param raw: pymavlink LOG_DATA message or any object with the same fields
    :param max_chunk_capacity: Maximum number of bytes a single chunk can carry
    """
    effective_count = max(0, min(int(raw.count), max_chunk_capacity))
    return LogDataChunk(id=int(raw.id),
                        offset=int(raw.ofs),
                        data=bytes(raw.data[:effective_count]),
                        stamp=datetime.now(timezone.utc))


# --- Command Emitter ---

class SendFailure(Exception):
    """The transport refused to send a command"""
    pass


class DBLogCommandEmitter(object):
    """
    Sends the log transfer commands to the device currently targeted by the MAVLink connection.
    All methods return True if the command was handed to the transport, False otherwise. Nothing is retried.
    """

    def __init__(self, master):
        """
        :param master: pymavlink connection e.g. returned by mavutil.mavlink_connection()
        """
        self._master = master

    def request_list(self, start_id: int, end_id: int) -> bool:
        return self._send('LOG_REQUEST_LIST', self._master.mav.log_request_list_send, start_id, end_id)

    def request_data(self, log_id: int, offset: int, count: int) -> bool:
        return self._send('LOG_REQUEST_DATA', self._master.mav.log_request_data_send, log_id, offset, count)

    def request_stop(self) -> bool:
        return self._send('LOG_REQUEST_END', self._master.mav.log_request_end_send)

    def _send(self, name: str, send_function, *fields) -> bool:
        try:
            self._transmit(send_function, fields)
        except SendFailure as e:
            DBLogger().log(f"Failed to send {name} message: {e}", logging.ERROR)
            return False
        DBLogger().log(f"Sent {name} {list(fields)} to {self._master.target_system}:{self._master.target_component}",
                       logging.DEBUG)
        return True

    def _transmit(self, send_function, fields):
        try:
            send_function(self._master.target_system, self._master.target_component, *fields)
        except (struct.error, mavutil.mavlink.MAVError, OSError) as e:
            raise SendFailure(str(e)) from e


# --- Goals ---

class GoalKind(Enum):
    LIST = "list"
    FETCH = "fetch"


class GoalStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    PREEMPTED = "preempted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self not in (GoalStatus.PENDING, GoalStatus.ACTIVE)


class GoalResult(NamedTuple):
    success: bool
    status: GoalStatus
    reason: str
    records: List[Union[LogEntrySummary, LogDataChunk]]


class GoalHandle(object):
    """
    A caller's handle on a List or Fetch operation. Records for the goal are delivered as they arrive and can be
    consumed with stream() or drain(). The terminal outcome is available via poll(), result() and wait().
    """

    def __init__(self, kind: GoalKind, request: Union[ListRequest, DataRequest], front_end):
        self.goal_id = uuid.uuid4().hex
        self.kind = kind
        self.request = request
        # False if a command sent on behalf of this goal could not be sent
        self.send_ok = True
        self._front_end = front_end
        self._status = GoalStatus.PENDING
        self._reason = ""
        self._records = []
        self._pending = queue.Queue()
        self._done = threading.Event()
        self._lock = threading.Lock()

    def __repr__(self):
        return f"GoalHandle({self.kind.value}, {self.goal_id[:8]}, {self._status.value})"

    @property
    def is_terminal(self) -> bool:
        return self._done.is_set()

    @property
    def records(self) -> List[Union[LogEntrySummary, LogDataChunk]]:
        with self._lock:
            return list(self._records)

    def poll(self) -> GoalStatus:
        with self._lock:
            return self._status

    def result(self) -> Optional[GoalResult]:
        """
        :return: The terminal result or None while the goal is still running
        """
        with self._lock:
            if not self._status.is_terminal:
                return None
            return GoalResult(success=self._status is GoalStatus.SUCCEEDED and self.send_ok,
                              status=self._status,
                              reason=self._reason,
                              records=list(self._records))

    def wait(self, timeout=None) -> Optional[GoalResult]:
        """
        Blocks until the goal reached a terminal status.

        :return: The terminal result or None if the timeout expired first
        """
        if not self._done.wait(timeout):
            return None
        return self.result()

    def cancel(self) -> bool:
        return self._front_end.cancel(self)

    def drain(self) -> List[Union[LogEntrySummary, LogDataChunk]]:
        """Returns all records delivered since the last drain() without blocking"""
        drained = []
        finished = False
        while True:
            try:
                record = self._pending.get_nowait()
            except queue.Empty:
                break
            if record is None:
                finished = True
            else:
                drained.append(record)
        if finished:
            # keep the end marker for stream()
            self._pending.put(None)
        return drained

    def stream(self, timeout=None):
        """
        Yields the records of this goal as they arrive. Ends once the goal is terminal and all records were yielded,
        or when no record arrived within timeout seconds.
        """
        while True:
            try:
                record = self._pending.get(timeout=timeout)
            except queue.Empty:
                return
            if record is None:
                self._pending.put(None)
                return
            yield record

    def _activate(self):
        with self._lock:
            if self._status is GoalStatus.PENDING:
                self._status = GoalStatus.ACTIVE

    def _deliver(self, record):
        with self._lock:
            if self._status.is_terminal:
                return
            self._records.append(record)
        self._pending.put(record)

    def _finish(self, status: GoalStatus, reason="") -> bool:
        with self._lock:
            if self._status.is_terminal:
                return False
            self._status = status
            self._reason = reason
        self._pending.put(None)
        self._done.set()
        return True


# --- Log Retrieval Coordinator ---

class SessionState(Enum):
    IDLE = "idle"
    LIST_ACTIVE = "list_active"
    DATA_ACTIVE = "data_active"


class DBLogRetrievalCoordinator(object):
    """
    State machine owning the device's single log session.

    All transitions happen while holding one lock: goal admissions and cancellations from caller threads as well as
    LOG_ENTRY/LOG_DATA ingestion from the receive thread. Whenever the session leaves a non-idle state a
    LOG_REQUEST_END is sent first. A failed LOG_REQUEST_END never blocks the transition.
    """

    def __init__(self, emitter: DBLogCommandEmitter, max_chunk_capacity=LOG_DATA_MAX_PAYLOAD):
        self._emitter = emitter
        self._max_chunk_capacity = max_chunk_capacity
        self._state = SessionState.IDLE
        self._front_ends = {}
        self._lock = threading.RLock()
        self._pending_list_admissions = 0
        self._pending_lock = threading.Lock()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def max_chunk_capacity(self) -> int:
        return self._max_chunk_capacity

    @property
    def active_goal(self) -> Optional[GoalHandle]:
        with self._lock:
            if self._state is SessionState.LIST_ACTIVE:
                return self._front_ends[GoalKind.LIST].active_goal
            if self._state is SessionState.DATA_ACTIVE:
                return self._front_ends[GoalKind.FETCH].active_goal
            return None

    def register_front_end(self, front_end):
        with self._lock:
            self._front_ends[front_end.kind] = front_end

    def announce_list_admission(self):
        """Marks a List admission as pending. Fetch admissions are rejected until the List goal was admitted."""
        with self._pending_lock:
            self._pending_list_admissions += 1

    def _list_admission_done(self):
        with self._pending_lock:
            self._pending_list_admissions = max(0, self._pending_list_admissions - 1)

    def _list_admission_pending(self) -> bool:
        with self._pending_lock:
            return self._pending_list_admissions > 0

    def admit(self, goal: GoalHandle):
        """
        Admits a new goal. A goal of the same kind is replaced, a goal of the other kind is preempted.
        Returns right after the commands were sent. Results arrive later through the goal handle.
        """
        with self._lock:
            if goal.kind is GoalKind.LIST:
                try:
                    self._admit_list(goal)
                finally:
                    self._list_admission_done()
            else:
                self._admit_fetch(goal)

    def _admit_list(self, goal: GoalHandle):
        self._front_ends[GoalKind.LIST].replace_active(goal)
        displaced = self._front_ends[GoalKind.FETCH].take_active()
        if displaced is not None:
            displaced._finish(GoalStatus.PREEMPTED, "Log list was requested")
        # Sent even while idle: the device may hold a session opened before this process started
        if not self._emitter.request_stop():
            goal.send_ok = False
        self._state = SessionState.LIST_ACTIVE
        goal._activate()
        DBLogger().log(f"Requesting log list {goal.request.start_id}..{goal.request.end_id}")
        if not self._emitter.request_list(goal.request.start_id, goal.request.end_id):
            self._reject_started(goal, "Failed to send LOG_REQUEST_LIST")

    def _admit_fetch(self, goal: GoalHandle):
        if self._list_admission_pending():
            DBLogger().log("Rejecting log data request: a log list request is pending", logging.WARNING)
            goal._finish(GoalStatus.REJECTED, "Log list request is pending")
            return
        self._front_ends[GoalKind.FETCH].replace_active(goal)
        displaced = self._front_ends[GoalKind.LIST].take_active()
        if displaced is not None:
            displaced._finish(GoalStatus.PREEMPTED, "Log data was requested")
        self._leave_session(goal)
        self._state = SessionState.DATA_ACTIVE
        goal._activate()
        request = goal.request
        DBLogger().log(f"Requesting log {request.id} data: offset={request.offset}, count={request.count}")
        if not self._emitter.request_data(request.id, request.offset, request.count):
            self._reject_started(goal, "Failed to send LOG_REQUEST_DATA")

    def _leave_session(self, goal: Optional[GoalHandle]) -> bool:
        # Stops the device's session if one is open. Always moves the local state to IDLE.
        if self._state is SessionState.IDLE:
            return True
        sent = self._emitter.request_stop()
        if not sent and goal is not None:
            goal.send_ok = False
        self._state = SessionState.IDLE
        return sent

    def _reject_started(self, goal: GoalHandle, reason: str):
        self._front_ends[goal.kind].take_active(goal)
        self._state = SessionState.IDLE
        goal.send_ok = False
        goal._finish(GoalStatus.REJECTED, reason)

    def cancel(self, goal: GoalHandle) -> bool:
        """
        Caller initiated cancellation. A no-op for goals that are not active.

        :return: False if the LOG_REQUEST_END could not be sent, True otherwise
        """
        with self._lock:
            front_end = self._front_ends[goal.kind]
            if front_end.active_goal is not goal or goal.is_terminal:
                return True
            front_end.take_active(goal)
            sent = self._leave_session(goal)
            goal._finish(GoalStatus.CANCELED, "Canceled by caller")
            DBLogger().log(f"{goal.kind.value} goal {goal.goal_id[:8]} canceled")
            return sent

    def end_transfer(self) -> bool:
        """
        Ends the current log session. The active goal is preempted. Does nothing while idle.

        :return: False if the LOG_REQUEST_END could not be sent, True otherwise
        """
        with self._lock:
            if self._state is SessionState.IDLE:
                return True
            kind = GoalKind.LIST if self._state is SessionState.LIST_ACTIVE else GoalKind.FETCH
            goal = self._front_ends[kind].take_active()
            sent = self._leave_session(goal)
            if goal is not None:
                goal._finish(GoalStatus.PREEMPTED, "Log transfer end was requested")
            return sent

    def on_log_entry(self, entry: LogEntrySummary):
        with self._lock:
            if self._state is not SessionState.LIST_ACTIVE:
                return
            goal = self._front_ends[GoalKind.LIST].active_goal
            if goal is None:
                return
            if entry.num_logs == 0:
                DBLogger().log("Device reported no logs")
                self._complete(goal)
                return
            if not goal.request.start_id <= entry.id <= goal.request.end_id:
                DBLogger().log(f"Discarding log entry {entry.id} outside of requested range", logging.DEBUG)
                return
            goal._deliver(entry)
            if entry.id >= min(goal.request.end_id, entry.last_log_id):
                self._complete(goal)

    def on_log_data(self, chunk: LogDataChunk):
        with self._lock:
            if self._state is not SessionState.DATA_ACTIVE:
                return
            goal = self._front_ends[GoalKind.FETCH].active_goal
            if goal is None or chunk.id != goal.request.id:
                DBLogger().log(f"Discarding chunk of log {chunk.id} at offset {chunk.offset}", logging.DEBUG)
                return
            goal._deliver(chunk)
            request = goal.request
            if chunk.offset + len(chunk.data) >= request.offset + request.count \
                    or len(chunk.data) < min(self._max_chunk_capacity, LOG_DATA_MAX_PAYLOAD):
                self._complete(goal)

    def _complete(self, goal: GoalHandle):
        self._front_ends[goal.kind].take_active(goal)
        self._leave_session(goal)
        goal._finish(GoalStatus.SUCCEEDED)
        DBLogger().log(f"{goal.kind.value} goal {goal.goal_id[:8]} succeeded with {len(goal.records)} records")


# --- Operation Front Ends ---

class DBLogOperationFrontEnd(object):
    """
    Single-flight front end of one operation kind. A new goal replaces the active one of the same kind.
    Cross-kind arbitration is left to the coordinator.
    """
    kind = None

    def __init__(self, coordinator: DBLogRetrievalCoordinator):
        self._coordinator = coordinator
        self._active = None
        coordinator.register_front_end(self)

    @property
    def active_goal(self) -> Optional[GoalHandle]:
        return self._active

    def submit(self, request) -> GoalHandle:
        goal = GoalHandle(self.kind, request, self)
        self._coordinator.admit(goal)
        return goal

    def cancel(self, handle: GoalHandle) -> bool:
        return self._coordinator.cancel(handle)

    def poll(self, handle: GoalHandle) -> GoalStatus:
        return handle.poll()

    def replace_active(self, goal: GoalHandle):
        # Called by the coordinator while holding its lock
        previous = self._active
        self._active = goal
        if previous is not None and previous is not goal:
            previous._finish(GoalStatus.CANCELED, "This goal was canceled because another goal was received")

    def take_active(self, goal: Optional[GoalHandle] = None) -> Optional[GoalHandle]:
        # Called by the coordinator while holding its lock
        if goal is not None and self._active is not goal:
            return None
        active = self._active
        self._active = None
        return active


class DBLogListOperation(DBLogOperationFrontEnd):
    kind = GoalKind.LIST

    def submit(self, request: ListRequest) -> GoalHandle:
        # List requests take precedence over concurrently arriving fetch requests
        self._coordinator.announce_list_admission()
        return super(DBLogListOperation, self).submit(request)


class DBLogFetchOperation(DBLogOperationFrontEnd):
    kind = GoalKind.FETCH


# --- Publish channel and MAVLink link ---

class DBTopic(object):
    """Delivers every published record to all subscribers in subscription order"""

    def __init__(self, name: str):
        self.name = name
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """
        :return: Function that removes the subscription again
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, record):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(record)
            except Exception as e:
                DBLogger().log(f"Subscriber of '{self.name}' failed: {e}", logging.WARNING)


class DBLogTransferLink(object):
    """
    Background thread receiving LOG_ENTRY and LOG_DATA messages from a MAVLink connection.
    """

    def __init__(self, master, handler: Callable, rx_timeout=DEFAULT_RX_TIMEOUT):
        self._master = master
        self._handler = handler
        self._rx_timeout = rx_timeout
        self._thread = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            DBLogger().log("Log transfer link already running", logging.WARNING)
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._rx_loop, name='db-log-transfer-rx', daemon=True)
        self._thread.start()

    def stop(self, join_timeout=2.0):
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=join_timeout)
        if self._thread.is_alive():
            DBLogger().log(f"Log transfer receive loop did not stop within {join_timeout}s", logging.WARNING)
            return
        self._thread = None

    def _rx_loop(self):
        while not self._stop_event.is_set():
            try:
                msg = self._master.recv_match(type=LOG_MESSAGE_TYPES, blocking=True, timeout=self._rx_timeout)
                if msg is not None:
                    self._handler(msg)
            except Exception as e:
                DBLogger().log(f"Error in log transfer receive loop: {e}", logging.ERROR)
                self._stop_event.wait(self._rx_timeout)


class DBLogTransfer(object):
    """
    Log transfer for one MAVLink connection.

    Low-level control: request_log_list(), request_log_data(), request_log_end() send the commands directly.
    Long-running operations: start_list_operation() and start_fetch_operation() return a GoalHandle and are
    coordinated so that only one of them uses the device's log session at a time.
    Every received entry/chunk is published on log_entry_topic / log_data_topic.

    Example:
        with db_connect_log_transfer('tcp:192.168.2.1:5760') as transfer:
            goal = transfer.start_list_operation(0, 0xffff)
            result = goal.wait(timeout=10)
    """

    def __init__(self, master, max_chunk_capacity=LOG_DATA_MAX_PAYLOAD, rx_timeout=DEFAULT_RX_TIMEOUT,
                 stop_on_start=False):
        """
        :param master: pymavlink connection with target_system and target_component set
        :param max_chunk_capacity: Maximum number of bytes kept from a single LOG_DATA message
        :param rx_timeout: Seconds a single receive call may block
        :param stop_on_start: Send LOG_REQUEST_END on start() to close a session left open by an earlier process
        """
        self.master = master
        self._max_chunk_capacity = max_chunk_capacity
        self._stop_on_start = stop_on_start
        self.emitter = DBLogCommandEmitter(master)
        self.coordinator = DBLogRetrievalCoordinator(self.emitter, max_chunk_capacity)
        self.list_operation = DBLogListOperation(self.coordinator)
        self.fetch_operation = DBLogFetchOperation(self.coordinator)
        self.log_entry_topic = DBTopic("log_entry")
        self.log_data_topic = DBTopic("log_data")
        self._link = DBLogTransferLink(master, self.handle_message, rx_timeout)

    def start(self):
        if self._stop_on_start:
            self.emitter.request_stop()
        self._link.start()

    def stop(self):
        self._link.stop()

    # --- Context Manager Protocol ---
    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def handle_message(self, msg):
        """Translates an incoming MAVLink message, publishes it and hands it to the coordinator"""
        msg_type = msg.get_type()
        if msg_type == 'LOG_ENTRY':
            entry = db_to_entry_summary(msg)
            self.log_entry_topic.publish(entry)
            self.coordinator.on_log_entry(entry)
        elif msg_type == 'LOG_DATA':
            chunk = db_to_data_chunk(msg, self._max_chunk_capacity)
            self.log_data_topic.publish(chunk)
            self.coordinator.on_log_data(chunk)

    def request_log_list(self, start_id: int, end_id: int) -> bool:
        return self.emitter.request_list(start_id, end_id)

    def request_log_data(self, log_id: int, offset: int, count: int) -> bool:
        return self.emitter.request_data(log_id, offset, count)

    def request_log_end(self) -> bool:
        return self.emitter.request_stop()

    def start_list_operation(self, start_id: int, end_id: int) -> GoalHandle:
        return self.list_operation.submit(ListRequest(start_id, end_id))

    def start_fetch_operation(self, log_id: int, offset: int, count: int) -> GoalHandle:
        return self.fetch_operation.submit(DataRequest(log_id, offset, count))

    def end_transfer(self) -> bool:
        return self.coordinator.end_transfer()


def db_connect_log_transfer(connection_string=DEFAULT_CONNECTION_STRING, source_system=DEFAULT_SOURCE_SYSTEM,
                            target_system=None, target_component=None, wait_heartbeat=True,
                            heartbeat_timeout=DEFAULT_HEARTBEAT_TIMEOUT, **kwargs) -> Optional[DBLogTransfer]:
    """
    Opens a MAVLink connection and creates a DBLogTransfer for it. The transfer is not started.

    :param connection_string: pymavlink connection string e.g. 'tcp:192.168.10.21:5760' or 'udpin:0.0.0.0:14550'
    :param source_system: MAVLink system ID of this ground station
    :param target_system: Overrides the system ID learned from the heartbeat
    :param target_component: Overrides the component ID learned from the heartbeat
    :param wait_heartbeat: Wait for a heartbeat before returning
    :param heartbeat_timeout: Seconds to wait for the heartbeat
    :param kwargs: Passed on to DBLogTransfer
    :return: DBLogTransfer or None if the connection failed or no heartbeat was received
    """
    logger = DBLogger()
    logger.log(f"Connecting to {connection_string}...")
    try:
        master = mavutil.mavlink_connection(connection_string, source_system=source_system)
    except OSError as e:
        logger.log(f"Could not connect to {connection_string}: {e}", logging.ERROR)
        return None

    if wait_heartbeat:
        if master.wait_heartbeat(timeout=heartbeat_timeout) is None:
            logger.log(f"No heartbeat received within {heartbeat_timeout}s", logging.ERROR)
            master.close()
            return None
        logger.log(f"Heartbeat received from system {master.target_system}, component {master.target_component}")

    if target_system is not None:
        master.target_system = target_system
    if target_component is not None:
        master.target_component = target_component
    return DBLogTransfer(master, **kwargs)
