from airvol.events import EventLog, EventSink
from airvol.models import ConnectionState


class ExplodingListener(EventSink):
    def log_line(self, timestamp, message):
        raise RuntimeError("display gone")

    def state_changed(self, state):
        raise RuntimeError("display gone")


def test_event_log_is_bounded():
    log = EventLog(max_lines=3)
    for index in range(5):
        log.log_line(0.0, f"line {index}")

    lines = log.lines()
    assert len(lines) == 3
    assert lines[-1].endswith("line 4")
    assert log.dump().count("\n") == 2


def test_failing_listener_does_not_reach_the_core():
    log = EventLog()
    log.subscribe(ExplodingListener())

    log.log_line(0.0, "hello")
    log.state_changed(ConnectionState.reconnecting(0.25))

    assert log.state == ConnectionState.reconnecting(0.25)
    assert log.lines()[0].endswith("hello")


def test_state_descriptions():
    assert ConnectionState.discovering().describe() == "Searching for devices..."
    assert str(ConnectionState.connected("ws://10.0.0.5:81/ws")) == "Connected to ws://10.0.0.5:81/ws"
    assert str(ConnectionState.reconnecting(0.256)) == "Reconnecting in 0.26s"
    assert str(ConnectionState.error("boom")) == "Error: boom"
