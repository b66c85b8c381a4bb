import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

STDOUT = "stdout"
STDERR = "stderr"


class JsonLinesHandler(logging.Handler):
    """
    A logging handler that appends one JSON object per record to a service run log.

    Records coming from a `proc.<service>` logger are service output lines; the
    stream they came from is taken from the record's `stream` attribute, falling
    back to the level (INFO is stdout, anything else stderr).
    """
    def __init__(self, log_path: Path):
        """
        :param log_path: Path of the run log. Parent directories are created.
        """
        super().__init__()
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.write_lock = threading.Lock()
        self._file: Optional[TextIO] = self.log_path.open("a", encoding="utf-8")

    def build_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        stream = getattr(record, "stream", None)
        if stream not in (STDOUT, STDERR):
            stream = STDOUT if record.levelno <= logging.INFO else STDERR
        name = record.name.split('.', 1)[-1] if record.name.startswith('proc.') else record.name
        return {
            "name": name,
            "stream": stream,
            "message": record.getMessage(),
            "time": record.created,
        }

    def emit(self, record: logging.LogRecord) -> None:
        """
        Serializes the record and writes it immediately, so readers polling the
        file see each line as soon as the service prints it.

        :param record: The log record to be written.
        """
        try:
            line = json.dumps(self.build_entry(record))
            with self.write_lock:
                if self._file is None:
                    return
                self._file.write(line + "\n")
                self._file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        with self.write_lock:
            if self._file is not None:
                self._file.close()
                self._file = None
        super().close()
