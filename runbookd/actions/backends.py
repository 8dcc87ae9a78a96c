"""
Action backends: the boundary to the systems remediation acts on.
"""

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Optional

import psutil

from runbookd.exceptions import ActionTimeout
from runbookd.runbooks.templates import BoundAction

logger = logging.getLogger(__name__)


class BackendResult(NamedTuple):
    """Outcome of a single backend call"""
    ok: bool
    output: str = ""
    error: Optional[str] = None


class ActionBackend(ABC):
    """Abstract base class for action backends"""

    @abstractmethod
    def execute(self, action: BoundAction, timeout: float) -> BackendResult:
        """
        Execute a bound action against its target.

        Raises:
            ActionTimeout: If the call exceeded its timeout
        """
        pass

    def check_precondition(self, action: BoundAction, precondition: str) -> bool:
        """
        Re-confirm that a precondition still holds before a guarded retry.

        Unknown preconditions cannot be confirmed and therefore never hold.
        """
        logger.warning(f"{self.__class__.__name__} cannot check precondition '{precondition}'")
        return False


class ShellBackend(ActionBackend):
    """Runs rendered argv lists without a shell"""

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}
        self.env = self.config.get('env')

    def execute(self, action: BoundAction, timeout: float) -> BackendResult:
        argv = action.argv()
        logger.debug(f"Executing {argv} (timeout: {timeout}s)")
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.env,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise ActionTimeout(action.name, action.target, f"timed out after {timeout}s")
        except OSError as e:
            return BackendResult(False, "", f"failed to start {argv[0]}: {e}")

        output = (completed.stdout or "") + (completed.stderr or "")
        if completed.returncode != 0:
            return BackendResult(False, output, f"exit status {completed.returncode}")
        return BackendResult(True, output)


class ProcessBackend(ActionBackend):
    """Local process inspection and control via psutil"""

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.top_n = config.get('top_n', 10)
        self.sample_interval = config.get('sample_interval', 0.2)

        self._operations = {
            'top_cpu': self._top_cpu,
            'top_memory': self._top_memory,
            'kill': self._kill,
            'terminate': self._terminate,
        }
        self._preconditions = {
            'process_exists': self._process_exists,
            'top_cpu_consumer': self._is_top_cpu_consumer,
            'top_memory_consumer': self._is_top_memory_consumer,
        }

    def execute(self, action: BoundAction, timeout: float) -> BackendResult:
        operation = self._operations.get(action.template.operation)
        if operation is None:
            return BackendResult(False, "", f"unknown process operation '{action.template.operation}'")
        return operation(action.param_dict, timeout)

    def check_precondition(self, action: BoundAction, precondition: str) -> bool:
        check = self._preconditions.get(precondition)
        if check is None:
            return super().check_precondition(action, precondition)
        try:
            return check(action.param_dict)
        except psutil.Error as e:
            logger.warning(f"Precondition '{precondition}' check failed: {e}")
            return False

    def _snapshot(self) -> List[Dict]:
        """Processes with CPU usage sampled over a short interval"""
        procs = []
        for proc in psutil.process_iter(['pid', 'name']):
            try:
                proc.cpu_percent(None)
                procs.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        time.sleep(self.sample_interval)

        snapshot = []
        for proc in procs:
            try:
                snapshot.append({
                    'pid': proc.pid,
                    'name': proc.info['name'] or 'unknown',
                    'cpu_percent': proc.cpu_percent(None),
                    'memory_bytes': proc.memory_info().rss,
                })
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return snapshot

    def _format(self, processes: List[Dict]) -> str:
        lines = [f"{'PID':>8} {'CPU%':>6} {'RSS(MB)':>9}  NAME"]
        for p in processes:
            lines.append(f"{p['pid']:>8} {p['cpu_percent']:>6.1f} {p['memory_bytes'] / 1024 / 1024:>9.1f}  {p['name']}")
        return "\n".join(lines)

    def _top_cpu(self, params: Dict, timeout: float) -> BackendResult:
        processes = sorted(self._snapshot(), key=lambda p: p['cpu_percent'], reverse=True)
        return BackendResult(True, self._format(processes[:self.top_n]))

    def _top_memory(self, params: Dict, timeout: float) -> BackendResult:
        processes = sorted(self._snapshot(), key=lambda p: p['memory_bytes'], reverse=True)
        return BackendResult(True, self._format(processes[:self.top_n]))

    def _signal(self, params: Dict, timeout: float, kill: bool) -> BackendResult:
        pid = params['pid']
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            if kill:
                proc.kill()
            else:
                proc.terminate()
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            raise ActionTimeout('kill' if kill else 'terminate', str(pid), f"process still alive after {timeout}s")
        except psutil.NoSuchProcess:
            return BackendResult(False, "", f"no such process {pid}")
        except psutil.AccessDenied:
            return BackendResult(False, "", f"access denied for process {pid}")
        return BackendResult(True, f"{'killed' if kill else 'terminated'} {name} ({pid})")

    def _kill(self, params: Dict, timeout: float) -> BackendResult:
        return self._signal(params, timeout, kill=True)

    def _terminate(self, params: Dict, timeout: float) -> BackendResult:
        return self._signal(params, timeout, kill=False)

    def _process_exists(self, params: Dict) -> bool:
        return psutil.pid_exists(params['pid'])

    def _is_top_cpu_consumer(self, params: Dict) -> bool:
        snapshot = self._snapshot()
        if not snapshot:
            return False
        top = max(snapshot, key=lambda p: p['cpu_percent'])
        return top['pid'] == params['pid']

    def _is_top_memory_consumer(self, params: Dict) -> bool:
        snapshot = self._snapshot()
        if not snapshot:
            return False
        top = max(snapshot, key=lambda p: p['memory_bytes'])
        return top['pid'] == params['pid']


def create_backends(config: Optional[Dict] = None) -> Dict[str, ActionBackend]:
    """Build the default backend set"""
    config = config or {}
    return {
        'shell': ShellBackend(config.get('shell')),
        'process': ProcessBackend(config.get('process')),
    }
