# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Execution of container processes with log redirection and lifecycle management.
"""
import logging
import os
import subprocess
import time
from typing import List, Dict, Optional

import psutil

logger = logging.getLogger(__name__)

HOST_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "TZ", "TMPDIR", "SYSTEMROOT")


def base_environment() -> Dict[str, str]:
    """
    The few host variables a process needs to run at all.
    """
    return {k: os.environ[k] for k in HOST_ENV_KEYS if k in os.environ}


class ProcessRunner:
    """
    Manages the execution of a single container process.

    A runner either owns the process it started, or is re-attached to a process
    started by an earlier invocation, by pid.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.pid: Optional[int] = None
        self.create_time: Optional[float] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None) -> int:
        """
        Starts the process in its own session, so it outlives the orchestrator and can be
        signalled as a group.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Returns:
            int: The process id.

        Raises:
            OSError: If the command cannot be executed.
        """
        # Ensure working_dir exists
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        log_handle = open(self.log_file, 'ab') if self.log_file else subprocess.DEVNULL
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except OSError as e:
            logger.error("[%s] Failed to start: %s", self.name, e)
            raise
        finally:
            if log_handle is not subprocess.DEVNULL:
                log_handle.close()

        self.pid = self.process.pid
        try:
            self.create_time = psutil.Process(self.pid).create_time()
        except psutil.Error:
            self.create_time = None
        return self.pid

    def attach(self, pid: int, create_time: Optional[float] = None) -> None:
        """
        Re-attaches to a process started by another invocation.
        """
        self.process = None
        self.pid = pid
        self.create_time = create_time

    def _psutil_process(self) -> Optional[psutil.Process]:
        """
        The live process, guarding against pid reuse with the recorded start time.
        """
        if self.pid is None:
            return None
        try:
            proc = psutil.Process(self.pid)
            if self.create_time is not None and abs(proc.create_time() - self.create_time) > 1.0:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc
        except psutil.Error:
            return None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        return self._psutil_process() is not None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process. Only known for processes this runner owns.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process is not None:
            return self.process.poll()
        return None

    def stop(self, timeout: float = 10) -> bool:
        """
        Sends SIGTERM to the process and its descendants, followed by SIGKILL for any
        that are still alive after ``timeout`` seconds.

        Args:
            timeout (float): Seconds to wait for termination before killing.

        Returns:
            bool: True if the process had to be killed.
        """
        proc = self._psutil_process()
        if proc is None:
            self._reap()
            return False

        logger.info("[%s] Stopping process %d...", self.name, proc.pid)
        try:
            descendants = proc.children(recursive=True)
        except psutil.Error:
            descendants = []

        # An owned process is signalled and waited on through Popen, so its
        # exit status is collected here rather than reaped by psutil.
        if self.process is not None:
            self.process.terminate()
            procs = descendants
        else:
            procs = [proc] + descendants
        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass

        deadline = time.monotonic() + timeout
        forced = False
        if self.process is not None:
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()
                forced = True
        _, alive = psutil.wait_procs(procs, timeout=max(0.0, deadline - time.monotonic()))

        for p in alive:
            try:
                p.kill()
                forced = True
            except psutil.NoSuchProcess:
                pass
        if forced:
            logger.warning("[%s] Process did not terminate within %gs, killed", self.name, timeout)
            psutil.wait_procs(alive, timeout=1)
        self._reap()
        return forced

    def _reap(self) -> None:
        if self.process is not None:
            try:
                self.process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass
