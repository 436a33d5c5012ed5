from __future__ import annotations
import json
import datetime as dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from polychat.core.models import Message, Result

logger = logging.getLogger(__name__)


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class Transcript:
    """
    Conversation record for one session: user and assistant messages in
    order, plus the iteration results of every turn.

    With root_dir set, every record is appended to <root_dir>/<session_id>.jsonl
    and an existing file for that id is replayed on start. Without it the
    record lives in memory only.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        root_dir: Optional[Path] = None,
        header_meta: Optional[Dict] = None,
    ):
        self._root_dir = Path(root_dir) if root_dir else None
        self._session_id = session_id or dt.datetime.now(dt.timezone.utc).strftime('%Y%m%d-%H%M%S-%f')
        self._header_meta = header_meta or {}
        self._messages: List[Message] = []
        self._records: List[Dict[str, Any]] = []
        self._path: Optional[Path] = None

        if self._root_dir:
            self._root_dir.mkdir(parents=True, exist_ok=True)
            self._path = self._root_dir / f'{self._session_id}.jsonl'
            if self._path.exists() and self._path.stat().st_size > 0:
                self._load_from_file()
                return
        self._write({'type': 'header', 'ts': _now(), 'meta': self._header_meta})

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def records(self) -> List[Dict[str, Any]]:
        return list(self._records)

    def append_message(self, message: Message) -> None:
        self._write({'type': 'message', 'ts': _now(), **message.to_dict()})
        self._messages.append(message)

    def record_results(self, results: Sequence[Result]) -> None:
        self._write({
            'type': 'results',
            'ts': _now(),
            'results': [{'iteration': r.iteration, 'response': r.response, 'error': r.error} for r in results],
        })

    # Internal helpers

    def _write(self, rec: Dict[str, Any]) -> None:
        self._records.append(rec)
        if self._path is not None:
            with self._path.open('a', encoding='utf-8') as f:
                f.write(json.dumps(rec, ensure_ascii=False) + '\n')

    def _load_from_file(self) -> None:
        assert self._path is not None
        with self._path.open('r', encoding='utf-8') as f:
            for n, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping unreadable line %d in %s", n, self._path)
                    continue
                self._records.append(obj)
                if obj.get('type') == 'message' and obj.get('role') in ('user', 'assistant'):
                    self._messages.append(Message.from_dict(obj))
