import pytest

from raftshard.annotation import (
    COLOR_FAILURE,
    COLOR_FAULT,
    COLOR_INFO,
    COLOR_SUCCESS,
    COLOR_USER,
    TAG_CHECKER,
    TAG_INFO,
    TAG_PARTITION,
    AnnotationLog,
    FrameworkInfo,
    timestamp,
)


def test_timestamp_is_monotone_enough():
    a = timestamp()
    b = timestamp()
    assert b >= a > 0


def test_point_uses_user_color_by_default():
    log = AnnotationLog()
    before = timestamp()
    log.point("tag", "desc", "details")
    [a] = log.annotations
    assert a.tag == "tag"
    assert a.description == "desc"
    assert a.details == "details"
    assert a.background_color == COLOR_USER
    assert a.start >= before
    assert a.end == 0


def test_interval_spans_from_start_to_now():
    log = AnnotationLog()
    start = timestamp()
    log.interval("t", start, "d", "x", COLOR_INFO)
    [a] = log.annotations
    assert a.start == start
    assert a.end >= start
    assert a.background_color == COLOR_INFO


def test_continuous_replaces_previous():
    log = AnnotationLog()
    log.continuous("c", "first", "first")
    assert log.annotations == []
    log.continuous("c", "second", "second")
    [closed] = log.annotations
    assert closed.description == "first"
    log.continuous_end("c")
    anns = log.annotations
    assert len(anns) == 2
    assert anns[1].description == "second"
    assert anns[1].start >= closed.end + 1000


def test_continuous_end_without_open_does_nothing():
    log = AnnotationLog()
    log.continuous_end("none")
    assert log.annotations == []


def test_finalize_and_clear():
    log = AnnotationLog()
    log.point("p", "a", "b")
    log.continuous("c", "open", "open", COLOR_FAULT)
    assert not log.is_finalized()
    result = log.finalize("done")
    assert log.is_finalized()
    assert [a.description for a in result] == ["a", "open", "done"]
    last = result[-1]
    assert last.tag == TAG_INFO
    assert last.end == last.start + 1000
    assert result[1].end >= result[1].start
    log.clear()
    assert not log.is_finalized()
    assert log.annotations == []
    assert [a.description for a in log.finalize("x")] == ["x"]


def test_checker_interval_joins_details():
    info = FrameworkInfo(3)
    info.checker_begin("checking")
    info.checker_success("ok", "OK")
    [a] = info.log.annotations
    assert a.tag == TAG_CHECKER
    assert a.details == "checking: OK"
    assert a.background_color == COLOR_SUCCESS
    assert a.end >= a.start > 0


def test_checker_without_begin_is_point():
    info = FrameworkInfo(3)
    info.checker_failure("bad", "details")
    [a] = info.log.annotations
    assert a.end == 0
    assert a.details == "details"
    assert a.background_color == COLOR_FAILURE


def test_checker_resets_after_end():
    info = FrameworkInfo(1)
    info.checker_begin("b")
    info.checker_neutral("n", "one")
    info.checker_neutral("n", "two")
    anns = info.log.annotations
    assert anns[1].end == 0
    assert anns[1].details == "two"


def test_connection_describes_partition():
    info = FrameworkInfo(3)
    info.connection([True, False, True])
    assert info.connected == [True, False, True]
    result = info.log.finalize("end")
    fault = [a for a in result if a.tag == TAG_PARTITION]
    assert [a.description for a in fault] == ["partition = [1] [0 2]"]
    assert fault[0].background_color == COLOR_FAULT


def test_connection_unchanged_records_nothing():
    info = FrameworkInfo(3)
    info.connection([True, True, True])
    assert info.log.annotations == []
    assert info.log.finalize("e")[0].description == "e"


def test_shutdown_and_restart():
    info = FrameworkInfo(3)
    info.shutdown([1])
    assert info.crashed == [False, True, False]
    info.shutdown([1])
    assert info.log.annotations == []
    info.restart_all()
    assert info.crashed == [False, False, False]
    [a] = info.log.annotations
    assert a.description == "partition = [0 2] / crash = [1]"


def test_shutdown_all_and_clear_failure():
    info = FrameworkInfo(2)
    info.shutdown_all()
    assert info.crashed == [True, True]
    info.clear_failure()
    assert info.crashed == [False, False]
    assert info.connected == [True, True]
    anns = info.log.annotations
    assert len(anns) == 1
    assert anns[0].tag == TAG_PARTITION


def test_two_partitions_text():
    info = FrameworkInfo(3)
    info.two_partitions([0, 1], [2])
    result = info.log.finalize("end")
    assert result[0].description == "partition = [0 1] [2]"


def test_restart_of_unknown_server_raises():
    info = FrameworkInfo(2)
    with pytest.raises(IndexError):
        info.restart([5])