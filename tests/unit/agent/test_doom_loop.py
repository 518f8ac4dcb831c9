import pytest

from src.agent.doom_loop import (
    DoomLoopTracker,
    ToolInvocationRecord,
    canonical_arguments,
    detect_doom_loop,
    fingerprint_arguments,
)


def _record(tool_name, args, index):
    return ToolInvocationRecord(tool_name=tool_name, fingerprint=fingerprint_arguments(args), index=index)


def test_third_identical_call_is_flagged_and_tool_name_discriminates():
    tracker = DoomLoopTracker(threshold=3)

    assert not tracker.check("read_file", {"path": "a.ts"}).flagged
    assert not tracker.check("read_file", {"path": "a.ts"}).flagged
    third = tracker.check("read_file", {"path": "a.ts"})
    assert third.flagged
    assert third.streak == 3

    assert not tracker.check("glob", {"path": "a.ts"}).flagged


def test_argument_key_order_does_not_matter():
    assert canonical_arguments({"offset": 0, "path": "t.ts"}) == canonical_arguments({"path": "t.ts", "offset": 0})

    history = [
        _record("read_file", {"offset": 0, "path": "t.ts"}, 0),
        _record("read_file", {"path": "t.ts", "offset": 0}, 1),
    ]
    verdict = detect_doom_loop(history, "read_file", {"path": "t.ts", "offset": 0}, threshold=3)
    assert verdict.flagged


def test_nested_structures_are_normalised():
    first = {"query": {"b": [1, 2], "a": {"y": 1, "x": 2}}}
    second = {"query": {"a": {"x": 2, "y": 1}, "b": [1, 2]}}
    assert fingerprint_arguments(first) == fingerprint_arguments(second)
    assert fingerprint_arguments({"b": [1, 2]}) != fingerprint_arguments({"b": [2, 1]})


def test_concatenation_ambiguity_is_not_a_collision():
    assert fingerprint_arguments({"a": "1,b:2"}) != fingerprint_arguments({"a": "1", "b": "2"})


def test_only_trailing_streak_counts():
    tracker = DoomLoopTracker(threshold=3)
    tracker.check("read_file", {"path": "a.ts"})
    tracker.check("read_file", {"path": "a.ts"})
    tracker.check("glob", {"pattern": "*"})

    verdict = tracker.check("read_file", {"path": "a.ts"})
    assert not verdict.flagged
    assert verdict.streak == 1


def test_rejected_calls_keep_the_streak_alive():
    tracker = DoomLoopTracker(threshold=2)
    tracker.check("glob", {"pattern": "*"})
    assert tracker.check("glob", {"pattern": "*"}).flagged
    assert tracker.check("glob", {"pattern": "*"}).flagged


def test_threshold_of_one_flags_every_call():
    assert detect_doom_loop([], "glob", {"pattern": "*"}, threshold=1).flagged


def test_invalid_threshold_is_rejected():
    with pytest.raises(ValueError):
        detect_doom_loop([], "glob", {}, threshold=0)
    with pytest.raises(ValueError):
        DoomLoopTracker(threshold=5, window=2)


def test_window_bounds_memory_and_reset_clears_it():
    tracker = DoomLoopTracker(threshold=2, window=3)
    for index in range(5):
        tracker.check("read_file", {"path": f"{index}.ts"})
    assert [record.index for record in tracker.records] == [2, 3, 4]

    tracker.reset()
    assert tracker.records == ()
    assert not tracker.check("read_file", {"path": "4.ts"}).flagged


def test_missing_arguments_equal_empty_arguments():
    history = [_record("list", None, 0), _record("list", {}, 1)]
    assert detect_doom_loop(history, "list", None, threshold=3).flagged
