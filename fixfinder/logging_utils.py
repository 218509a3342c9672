"""Structured event logging for fixfinder.

Events are snake_case names with keyword fields::

    logger.info("membership_resolved", sha=sha, path="remote", tags=12)

Output is one JSON object per line when the stream is not a terminal (log
shippers) and a coloured ``[LEVEL] event | k=v`` line when it is. WARN and
ERROR go to stderr.

``bind()`` returns a child logger that stamps extra fields (a commit sha, a
branch) on every event; ``timed()`` logs an event with its elapsed seconds.
"""
import json
import os
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone

LEVELS = {'DEBUG': 0, 'INFO': 1, 'WARN': 2, 'ERROR': 3}

_COLOURS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARN': '\033[33m',
    'ERROR': '\033[31m',
}
_RESET = '\033[0m'


class _LevelHolder:
    """Shared mutable level so bound children follow set_level on the parent."""

    def __init__(self, level: str):
        self.name = (level or 'INFO').upper()


class StructuredLogger:
    def __init__(self, level: str = 'INFO', *, stream=None, err_stream=None, context=None, _level=None):
        self._level = _level or _LevelHolder(level)
        self._stream = stream
        self._err_stream = err_stream
        self._context = dict(context or {})

    @property
    def level(self) -> str:
        return self._level.name

    def set_level(self, level: str) -> None:
        self._level.name = (level or 'INFO').upper()

    def bind(self, **fields) -> 'StructuredLogger':
        return StructuredLogger(
            stream=self._stream,
            err_stream=self._err_stream,
            context={**self._context, **fields},
            _level=self._level,
        )

    @contextmanager
    def timed(self, message: str, level: str = 'INFO', **kwargs):
        """Log ``message`` with ``seconds`` once the block exits, also on error."""
        started = time.monotonic()
        try:
            yield
        finally:
            self._log(level, message, seconds=round(time.monotonic() - started, 3), **kwargs)

    def enabled_for(self, level: str) -> bool:
        return LEVELS.get(level.upper(), 1) >= LEVELS.get(self.level, 1)

    def _out(self, level: str):
        # sys.stdout/sys.stderr may be replaced after import.
        if level in ('WARN', 'ERROR'):
            return self._err_stream or sys.stderr
        return self._stream or sys.stdout

    def _render_text(self, level: str, entry: dict) -> str:
        line = f"{_COLOURS.get(level, '')}[{level}]{_RESET} {entry['msg']}"
        fields = {k: v for k, v in entry.items() if k not in ('ts', 'level', 'msg')}
        if not fields:
            return line
        parts = []
        for k, v in fields.items():
            if isinstance(v, (dict, list, tuple)):
                v = json.dumps(v, default=str)[:100]
            parts.append(f"{k}={v}")
        return f"{line} | {' '.join(parts)}"

    def _log(self, level: str, message: str, **kwargs) -> None:
        level = level.upper()
        if not self.enabled_for(level):
            return

        entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': level,
            'msg': message,
            **self._context,
            **kwargs,
        }
        out = self._out(level)
        if out.isatty():
            print(self._render_text(level, entry), file=out)
        else:
            print(json.dumps(entry, default=str), file=out)

    def debug(self, message: str, **kwargs) -> None:
        self._log('DEBUG', message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log('INFO', message, **kwargs)

    def warn(self, message: str, **kwargs) -> None:
        self._log('WARN', message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log('ERROR', message, **kwargs)


logger = StructuredLogger(level=os.getenv('LOG_LEVEL', 'INFO'))
