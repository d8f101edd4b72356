# moss/modules/runner.py
import os
import subprocess
import sys
import threading
import time
from datetime import datetime

from moss.modules import logger as _logger


class CommandResult:
    """Outcome of one executed command"""

    def __init__(self, command, returncode, output, duration, log_path=None):
        self.command = command
        self.returncode = returncode
        self.output = output
        self.duration = duration
        self.log_path = log_path
        self.timestamp = datetime.now().isoformat()

    def ok(self):
        return self.returncode == 0

    def to_dict(self):
        return {
            "command": self.command,
            "returncode": self.returncode,
            "duration": self.duration,
            "log": self.log_path,
            "timestamp": self.timestamp,
        }


class CommandRunner:
    """
    Runs recipe scripts and helper tools.

    - stdout and stderr are merged
    - with ``log_path`` output goes to that file; ``tee`` also echoes it
    - without ``log_path`` output is captured into ``CommandResult.output``
    """

    def __init__(self, logger=None):
        self.log = logger or _logger.Logger("runner")

    @staticmethod
    def script_command(script, *args):
        """Executable scripts run directly, anything else through ``sh``."""
        if os.access(script, os.X_OK):
            return [script, *args]
        return ["sh", script, *args]

    def run(self, command, cwd=None, env=None, log_path=None, tee=False):
        self.log.debug(f"Running: {' '.join(command)} (cwd={cwd})")
        start = time.time()
        if log_path is None:
            proc = subprocess.run(command, cwd=cwd, env=env or os.environ.copy(),
                                  stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
            return CommandResult(command, proc.returncode, proc.stdout, time.time() - start)

        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, "ab") as logf:
            logf.write(f"==> {' '.join(command)}\n==> cwd: {cwd}\n".encode("utf-8"))
            logf.flush()
            proc = subprocess.Popen(
                command,
                cwd=cwd,
                env=env or os.environ.copy(),
                stdout=subprocess.PIPE if tee else logf,
                stderr=subprocess.STDOUT,
            )
            pump = None
            if tee:
                pump = threading.Thread(target=self._pump, args=(proc.stdout, logf), daemon=True)
                pump.start()
            proc.wait()
            if pump is not None:
                pump.join()
            logf.write(f"==> exit code {proc.returncode}\n".encode("utf-8"))

        return CommandResult(command, proc.returncode, None, time.time() - start, log_path=log_path)

    @staticmethod
    def _pump(stream, logf):
        out = getattr(sys.stdout, "buffer", None)
        for line in iter(stream.readline, b""):
            logf.write(line)
            if out is not None:
                out.write(line)
                out.flush()
        stream.close()
