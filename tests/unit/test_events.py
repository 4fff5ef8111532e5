"""Unit tests for the progress event stream."""

from goalflow.execution.events import (
    Event,
    EventStream,
    SubTaskFailed,
    SubTaskUnblocked,
    WaveCompleted,
)


class TestEventStream:
    """Tests for EventStream."""

    def test_emit_stamps_goal_id(self) -> None:
        stream = EventStream(goal_id="g-1")

        event = stream.emit(SubTaskUnblocked(subtask_id="B"))

        assert event.goal_id == "g-1"
        assert stream.events == [event]
        assert len(stream) == 1

    def test_subscribers_notified_in_order(self) -> None:
        stream = EventStream()
        seen: list[str] = []
        stream.subscribe(lambda e: seen.append(e.kind))

        stream.emit(SubTaskUnblocked(subtask_id="B"))
        stream.emit(SubTaskFailed(subtask_id="B", reason="boom"))

        assert seen == ["subtask_unblocked", "subtask_failed"]

    def test_failing_subscriber_does_not_break_stream(self) -> None:
        """Test a raising callback is logged and later callbacks still run."""
        stream = EventStream()
        seen: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("ui crashed")

        stream.subscribe(broken)
        stream.subscribe(seen.append)

        stream.emit(WaveCompleted(wave_index=0, completed=["A"]))

        assert len(seen) == 1
        assert len(stream) == 1

    def test_unsubscribe(self) -> None:
        stream = EventStream()
        seen: list[Event] = []
        stream.subscribe(seen.append)
        stream.unsubscribe(seen.append)

        stream.emit(SubTaskUnblocked(subtask_id="B"))

        assert seen == []

    def test_of_type_and_serialization(self) -> None:
        stream = EventStream(goal_id="g-1")
        stream.emit(SubTaskUnblocked(subtask_id="B"))
        stream.emit(WaveCompleted(wave_index=0))
        stream.emit(SubTaskUnblocked(subtask_id="C"))

        assert [e.subtask_id for e in stream.of_type(SubTaskUnblocked)] == ["B", "C"]
        payload = stream.to_list()
        assert payload[1]["kind"] == "wave_completed"
        assert payload[1]["goal_id"] == "g-1"
        assert isinstance(payload[0]["timestamp"], str)
