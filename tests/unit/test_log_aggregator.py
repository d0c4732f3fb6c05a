import threading
import time

from convoy.MANAGERS.log_aggregator import LogAggregator, LogFollower, follow


def test_follower_reads_new_lines_only(tmp_path):
    log = tmp_path / "app.log"
    log.write_text("old line\n")
    alive = [True]
    follower = LogFollower(str(log), lambda: alive[0])

    assert follower.poll() == []
    with open(log, "a") as f:
        f.write("first\nsec")
    assert follower.poll() == ["first"]
    with open(log, "a") as f:
        f.write("ond\n")
    assert follower.poll() == ["second"]

    alive[0] = False
    assert follower.poll() == []
    assert follower.done


def test_follower_from_start_flushes_partial_line(tmp_path):
    log = tmp_path / "app.log"
    log.write_text("one\ntwo")
    follower = LogFollower(str(log), lambda: False, from_start=True)
    assert follower.poll() == ["one", "two"]
    assert follower.done


def test_follower_waits_for_file(tmp_path):
    log = tmp_path / "late.log"
    follower = LogFollower(str(log), lambda: True, from_start=True)
    assert follower.poll() == []
    log.write_text("hello\n")
    assert follower.poll() == ["hello"]


def test_follow_ends_when_writer_stops(tmp_path):
    log = tmp_path / "app.log"
    log.write_text("")
    done = threading.Event()

    def writer():
        for i in range(3):
            with open(log, "a") as f:
                f.write(f"line {i}\n")
            time.sleep(0.05)
        done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    lines = list(follow(str(log), lambda: not done.is_set(), from_start=True, poll_interval=0.01))
    thread.join()
    assert lines == ["line 0", "line 1", "line 2"]


def test_independent_streams(tmp_path):
    log = tmp_path / "app.log"
    log.write_text("a\nb\n")
    first = follow(str(log), lambda: False, from_start=True)
    second = follow(str(log), lambda: False, from_start=True)
    assert next(first) == "a"
    assert list(second) == ["a", "b"]
    assert list(first) == ["b"]


def test_aggregator_interleaves(tmp_path):
    (tmp_path / "a.log").write_text("a1\na2\n")
    (tmp_path / "b.log").write_text("b1\n")
    aggregator = LogAggregator({
        "a": LogFollower(str(tmp_path / "a.log"), lambda: False, from_start=True),
        "b": LogFollower(str(tmp_path / "b.log"), lambda: False, from_start=True),
    }, poll_interval=0.01)
    assert sorted(aggregator.lines()) == [("a", "a1"), ("a", "a2"), ("b", "b1")]


def test_aggregator_stops_when_idle(tmp_path):
    (tmp_path / "a.log").write_text("a1\n")
    aggregator = LogAggregator({
        "a": LogFollower(str(tmp_path / "a.log"), lambda: True, from_start=True),
    })
    assert list(aggregator.lines(follow_forever=False)) == [("a", "a1")]


def test_format():
    assert LogAggregator.format("web", "hello", 5) == "web   | hello"
