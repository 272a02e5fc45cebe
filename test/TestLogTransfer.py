import struct
import threading
import time
import unittest
from unittest.mock import MagicMock, call, patch

from DroneBridgeLogTransfer import DBLogTransfer, DBLogTransferLink, DBTopic, SessionState, db_connect_log_transfer, \
    LOG_DATA_MAX_PAYLOAD, LOG_MESSAGE_TYPES
from pymavlink import mavutil


def idle_recv_match(type=None, blocking=False, timeout=None):
    time.sleep(0.01)
    return None


def make_master():
    master = MagicMock()
    master.target_system = 1
    master.target_component = 1
    master.recv_match.side_effect = idle_recv_match
    return master


def log_entry(log_id, num_logs=3, last_log_num=3):
    return mavutil.mavlink.MAVLink_log_entry_message(log_id, num_logs, last_log_num, 1700000000, 2048)


def log_data(log_id, offset, count=LOG_DATA_MAX_PAYLOAD):
    return mavutil.mavlink.MAVLink_log_data_message(log_id, offset, count, [1] * LOG_DATA_MAX_PAYLOAD)


class TestTopic(unittest.TestCase):

    def test_publish_in_subscription_order(self):
        topic = DBTopic("log_entry")
        received = []
        topic.subscribe(lambda record: received.append(("first", record)))
        topic.subscribe(lambda record: received.append(("second", record)))
        topic.publish(1)
        self.assertEqual(received, [("first", 1), ("second", 1)])

    def test_unsubscribe(self):
        topic = DBTopic("log_entry")
        received = []
        unsubscribe = topic.subscribe(received.append)
        topic.publish(1)
        unsubscribe()
        unsubscribe()
        topic.publish(2)
        self.assertEqual(received, [1])

    def test_failing_subscriber_does_not_stop_delivery(self):
        topic = DBTopic("log_data")
        received = []

        def broken(record):
            raise ValueError("broken subscriber")

        topic.subscribe(broken)
        topic.subscribe(received.append)
        topic.publish("chunk")
        self.assertEqual(received, ["chunk"])


class TestLogTransfer(unittest.TestCase):

    def setUp(self):
        self.master = make_master()
        self.transfer = DBLogTransfer(self.master)
        self.entries = []
        self.chunks = []
        self.transfer.log_entry_topic.subscribe(self.entries.append)
        self.transfer.log_data_topic.subscribe(self.chunks.append)

    def tearDown(self):
        self.transfer.stop()

    def test_ingestion_is_always_on(self):
        """Entries and chunks are published whether or not a goal wants them"""
        self.transfer.handle_message(log_entry(1))
        self.transfer.handle_message(log_data(7, 0))
        self.assertEqual([entry.id for entry in self.entries], [1])
        self.assertEqual([chunk.id for chunk in self.chunks], [7])

        fetch_goal = self.transfer.start_fetch_operation(3, 0, 1000)
        self.transfer.handle_message(log_data(4, 0))
        self.assertEqual(len(self.chunks), 2)
        self.assertEqual(fetch_goal.records, [])

    def test_published_chunk_is_clamped(self):
        self.transfer.handle_message(log_data(3, 0, 200))
        self.assertEqual(len(self.chunks[0].data), LOG_DATA_MAX_PAYLOAD)

    def test_unknown_messages_are_ignored(self):
        heartbeat = MagicMock()
        heartbeat.get_type.return_value = 'HEARTBEAT'
        self.transfer.handle_message(heartbeat)
        self.assertEqual(self.entries, [])
        self.assertEqual(self.chunks, [])

    def test_services_bypass_the_coordinator(self):
        self.assertTrue(self.transfer.request_log_list(0, 10))
        self.assertTrue(self.transfer.request_log_data(3, 0, 100))
        self.assertTrue(self.transfer.request_log_end())
        self.assertEqual(self.master.mav.method_calls, [call.log_request_list_send(1, 1, 0, 10),
                                                        call.log_request_data_send(1, 1, 3, 0, 100),
                                                        call.log_request_end_send(1, 1)])
        self.assertIs(self.transfer.coordinator.state, SessionState.IDLE)

    def test_service_reports_send_failure(self):
        self.master.mav.log_request_list_send.side_effect = struct.error("ushort format requires 0 <= number <= 65535")
        self.assertFalse(self.transfer.request_log_list(0, 70000))

    def test_stop_on_start_closes_stale_session(self):
        transfer = DBLogTransfer(self.master, stop_on_start=True, rx_timeout=0.01)
        with transfer:
            self.master.mav.log_request_end_send.assert_called_once_with(1, 1)

    def test_start_without_stop(self):
        with DBLogTransfer(self.master, rx_timeout=0.01):
            pass
        self.master.mav.log_request_end_send.assert_not_called()

    def test_received_messages_reach_the_goal(self):
        messages = [log_entry(1), log_entry(2), log_entry(3)]
        received_all = threading.Event()

        def recv_match(type=None, blocking=False, timeout=None):
            if messages:
                return messages.pop(0)
            received_all.set()
            time.sleep(0.01)
            return None

        self.master.recv_match.side_effect = recv_match
        list_goal = self.transfer.start_list_operation(0, 0xffff)
        self.transfer.start()
        result = list_goal.wait(timeout=2.0)
        self.assertTrue(received_all.wait(timeout=2.0))
        self.assertIsNotNone(result)
        self.assertTrue(result.success)
        self.assertEqual([entry.id for entry in result.records], [1, 2, 3])
        self.assertEqual(len(self.entries), 3)
        self.master.recv_match.assert_called_with(type=LOG_MESSAGE_TYPES, blocking=True, timeout=0.5)


class TestLogTransferLink(unittest.TestCase):

    def test_receive_loop_survives_errors(self):
        master = make_master()
        handled = []
        done = threading.Event()
        responses = [OSError("Connection reset"), log_entry(1)]

        def recv_match(type=None, blocking=False, timeout=None):
            if responses:
                response = responses.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
            done.set()
            time.sleep(0.01)
            return None

        def handler(msg):
            handled.append(msg)

        master.recv_match.side_effect = recv_match
        link = DBLogTransferLink(master, handler, rx_timeout=0.01)
        link.start()
        self.assertTrue(done.wait(timeout=2.0))
        self.assertTrue(link.is_running)
        link.stop()
        self.assertFalse(link.is_running)
        self.assertEqual([msg.id for msg in handled], [1])

    def test_restart_waits_for_blocked_receive_loop(self):
        master = make_master()
        entered = threading.Event()
        release = threading.Event()
        calls = []

        def recv_match(type=None, blocking=False, timeout=None):
            calls.append(threading.current_thread())
            entered.set()
            release.wait(timeout=2.0)
            return None

        master.recv_match.side_effect = recv_match
        link = DBLogTransferLink(master, lambda msg: None, rx_timeout=0.01)
        link.start()
        self.assertTrue(entered.wait(timeout=2.0))

        link.stop(join_timeout=0.05)
        self.assertTrue(link.is_running)
        link.start()
        self.assertEqual(len(set(calls)), 1)

        release.set()
        link.stop()
        self.assertFalse(link.is_running)
        self.assertEqual(len(set(calls)), 1)

    def test_stop_without_start(self):
        link = DBLogTransferLink(make_master(), lambda msg: None)
        link.stop()
        self.assertFalse(link.is_running)


class TestConnect(unittest.TestCase):

    @patch.object(mavutil, 'mavlink_connection')
    def test_connect_waits_for_heartbeat(self, mavlink_connection):
        master = make_master()
        master.wait_heartbeat.return_value = MagicMock()
        mavlink_connection.return_value = master

        transfer = db_connect_log_transfer('tcp:192.168.10.21:5760', target_system=99, target_component=1)
        self.assertIsInstance(transfer, DBLogTransfer)
        mavlink_connection.assert_called_once_with('tcp:192.168.10.21:5760', source_system=255)
        master.wait_heartbeat.assert_called_once()
        self.assertEqual(master.target_system, 99)
        self.assertEqual(master.target_component, 1)

        transfer.request_log_end()
        master.mav.log_request_end_send.assert_called_once_with(99, 1)

    @patch.object(mavutil, 'mavlink_connection')
    def test_connect_without_heartbeat(self, mavlink_connection):
        master = make_master()
        master.wait_heartbeat.return_value = None
        mavlink_connection.return_value = master

        self.assertIsNone(db_connect_log_transfer('udpin:0.0.0.0:14550', heartbeat_timeout=0.1))
        master.close.assert_called_once()

    @patch.object(mavutil, 'mavlink_connection')
    def test_connect_skipping_heartbeat(self, mavlink_connection):
        master = make_master()
        mavlink_connection.return_value = master

        transfer = db_connect_log_transfer('udpout:192.168.2.1:14555', wait_heartbeat=False, stop_on_start=True)
        self.assertIsNotNone(transfer)
        master.wait_heartbeat.assert_not_called()

    @patch.object(mavutil, 'mavlink_connection', side_effect=OSError("Connection refused"))
    def test_connect_failure(self, mavlink_connection):
        self.assertIsNone(db_connect_log_transfer('tcp:192.168.10.21:5760'))


if __name__ == '__main__':
    unittest.main()
