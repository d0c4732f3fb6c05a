"""
Log streaming for containers.
"""
import os
import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple


class LogFollower:
    """
    Incrementally reads one container log file. Each follower has its own position.
    """
    def __init__(self, path: str, is_alive: Callable[[], bool], from_start: bool = False):
        """
        :param path: The log file.
        :param is_alive: Tells whether the container can still write to the log.
        :param from_start: Start at the beginning of the file rather than at its current end.
        """
        self.path = path
        self.is_alive = is_alive
        self.from_start = from_start
        self.done = False
        self._file = None
        self._partial = ""

    def _open(self) -> bool:
        if self._file is None and os.path.exists(self.path):
            self._file = open(self.path, 'r', errors='replace')
            if not self.from_start:
                self._file.seek(0, os.SEEK_END)
        return self._file is not None

    def poll(self) -> List[str]:
        """
        Lines written since the previous poll. Marks the follower done once the
        container has stopped and everything it wrote has been returned.
        """
        if self.done:
            return []
        # Checked before reading, so nothing written before the process died is lost
        alive = self.is_alive()
        lines = []
        if self._open():
            chunk = self._file.read()
            if chunk:
                data = self._partial + chunk
                *complete, self._partial = data.split('\n')
                lines.extend(complete)
        if not alive:
            if self._partial:
                lines.append(self._partial)
                self._partial = ""
            self.close()
        return lines

    def close(self) -> None:
        self.done = True
        if self._file is not None:
            self._file.close()
            self._file = None


def follow(path: str,
           is_alive: Callable[[], bool],
           from_start: bool = False,
           poll_interval: float = 0.1) -> Iterator[str]:
    """
    Lazily yields log lines. Waits for new lines while the container is alive and
    ends once it has stopped.
    """
    follower = LogFollower(path, is_alive, from_start)
    try:
        while not follower.done:
            lines = follower.poll()
            yield from lines
            if not lines and not follower.done:
                time.sleep(poll_interval)
    finally:
        follower.close()


class LogAggregator:
    """
    Interleaves the logs of several containers, prefixing each line with its service.
    """
    def __init__(self, followers: Dict[str, LogFollower], poll_interval: float = 0.1):
        """
        :param followers: One follower per service.
        :param poll_interval: Seconds to sleep when no follower had anything new.
        """
        self.followers = followers
        self.poll_interval = poll_interval

    def lines(self, follow_forever: bool = True) -> Iterator[Tuple[str, str]]:
        """
        Yields (service, line) pairs until every follower is done, or until no new
        output is available when ``follow_forever`` is False.
        """
        try:
            while True:
                produced = False
                for name, follower in self.followers.items():
                    for line in follower.poll():
                        produced = True
                        yield name, line
                if all(f.done for f in self.followers.values()):
                    return
                if not produced:
                    if not follow_forever:
                        return
                    time.sleep(self.poll_interval)
        finally:
            for follower in self.followers.values():
                follower.close()

    @staticmethod
    def format(name: str, line: str, width: Optional[int] = None) -> str:
        return f"{name:{width or 15}} | {line}"
