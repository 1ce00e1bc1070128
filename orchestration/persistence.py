import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from orchestration.models import Position


logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class SymbolState:
    symbol: str
    position: Optional[Position] = None
    equity: Optional[float] = None
    updated_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'position': self.position.as_dict() if self.position else None,
            'equity': self.equity,
            'updated_at': self.updated_at,
        }


class StateStore:
    """Durable snapshot of every committed position transition.

    Writes go to a temp file that replaces the snapshot atomically; the
    previous snapshot is kept as ``<name>.bak`` and used when the primary
    file cannot be parsed.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + '.bak')
        self._lock = threading.Lock()
        self._states: Dict[str, SymbolState] = {}
        self._loaded = False

    def load(self) -> Dict[str, SymbolState]:
        with self._lock:
            data = self._read(self.path)
            if data is None and self.backup_path.exists():
                logger.warning("State file %s unreadable; falling back to %s", self.path, self.backup_path)
                data = self._read(self.backup_path)
            self._states = self._parse(data or {})
            self._loaded = True
            logger.info("Loaded persisted state for %s symbol(s)", len(self._states))
            return dict(self._states)

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.error("Failed to read state file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.error("State file %s does not hold an object", path)
            return None
        return data

    def _parse(self, data: Dict[str, Any]) -> Dict[str, SymbolState]:
        version = data.get('version', STATE_VERSION)
        if version > STATE_VERSION:
            logger.warning("State file version %s is newer than supported %s", version, STATE_VERSION)
        states: Dict[str, SymbolState] = {}
        for symbol, entry in (data.get('symbols') or {}).items():
            if not isinstance(entry, dict):
                continue
            try:
                position = Position.from_dict(entry['position']) if entry.get('position') else None
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Discarding unreadable persisted position for %s: %s", symbol, exc)
                position = None
            states[symbol] = SymbolState(
                symbol=symbol,
                position=position,
                equity=entry.get('equity'),
                updated_at=float(entry.get('updated_at') or 0.0),
            )
        return states

    def get(self, symbol: str) -> Optional[SymbolState]:
        with self._lock:
            return self._states.get(symbol)

    def save_symbol(self, symbol: str, position: Optional[Position], equity: Optional[float] = None) -> None:
        with self._lock:
            self._states[symbol] = SymbolState(symbol=symbol, position=position, equity=equity)
            self._write()

    def remove_symbol(self, symbol: str) -> None:
        with self._lock:
            if self._states.pop(symbol, None) is not None:
                self._write()

    def _write(self) -> None:
        payload = {
            'version': STATE_VERSION,
            'saved_at': time.time(),
            'symbols': {symbol: state.as_dict() for symbol, state in self._states.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copyfile(self.path, self.backup_path)
        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix='.tmp', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w') as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
