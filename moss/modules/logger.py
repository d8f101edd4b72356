import os
import datetime
import threading
import json

from moss.modules.config import Settings


class Logger:
    # level -> (severity, console color)
    LEVELS = {
        "DEBUG": (10, "\033[90m"),
        "INFO": (20, "\033[94m"),
        "SUCCESS": (25, "\033[92m"),
        "WARNING": (30, "\033[93m"),
        "ERROR": (40, "\033[91m"),
    }
    RESET = "\033[0m"

    def __init__(self, name="moss", settings: Settings = None):
        self.name = name
        self.settings = settings or Settings(log_to_file=False)
        self.log_file = os.path.join(self.settings.log_dir, "moss.log") if self.settings.log_to_file else None
        self.min_level = self.LEVELS.get(self.settings.log_level.upper(), self.LEVELS["INFO"])[0]
        self._lock = threading.Lock()

        if self.log_file:
            try:
                os.makedirs(os.path.dirname(self.log_file), exist_ok=True)
            except OSError as e:
                print(f"Logger: couldn't create log directory for {self.log_file}: {e}")
                self.log_file = None

    def child(self, name):
        """Return a logger sharing this one's sinks under another name."""
        clone = object.__new__(Logger)
        clone.__dict__.update(self.__dict__)
        clone.name = name
        return clone

    def _timestamp(self):
        if self.settings.timestamp_utc:
            now = datetime.datetime.now(datetime.timezone.utc)
        else:
            now = datetime.datetime.now()
        return now.strftime("%Y-%m-%d %H:%M:%S")

    def _render(self, level, message):
        if self.settings.log_format == "json":
            return json.dumps({"timestamp": self._timestamp(), "logger": self.name,
                               "level": level, "message": message})
        return f"[{self._timestamp()}] [{self.name}] [{level}] {message}"

    def _rotate(self):
        limit = self.settings.max_log_size_kb * 1024
        if limit <= 0 or not os.path.exists(self.log_file) or os.path.getsize(self.log_file) <= limit:
            return
        try:
            os.replace(self.log_file, self.log_file + ".1")
        except OSError as e:
            print(f"Logger: couldn't rotate log {self.log_file}: {e}")

    def _append(self, line):
        self._rotate()
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            print(f"Logger: couldn't write to log file {self.log_file}: {e}")

    def _print(self, line, level):
        if self.settings.color_output and self.settings.log_format == "text":
            print(f"{self.LEVELS[level][1]}{line}{self.RESET}")
        else:
            print(line)

    def log(self, level, message):
        level = level.upper()
        if self.LEVELS.get(level, (0,))[0] < self.min_level:
            return

        line = self._render(level, message)
        with self._lock:
            if self.settings.log_to_console:
                self._print(line, level)
            if self.log_file:
                self._append(line)

    def debug(self, message):
        self.log("DEBUG", message)

    def info(self, message):
        self.log("INFO", message)

    def success(self, message):
        self.log("SUCCESS", message)

    def warning(self, message):
        self.log("WARNING", message)

    def error(self, message):
        self.log("ERROR", message)
