"""Duplicate suppression for relayed messages."""

from collections import OrderedDict


class SeenMessages:
    """Bounded insertion-ordered set of recently relayed message keys."""

    def __init__(self, maxsize: int = 1024):
        self.maxsize = maxsize
        self._keys: OrderedDict[str, None] = OrderedDict()

    @staticmethod
    def key(session_id: str, message_id: str) -> str:
        return f"{session_id}\n{message_id}"

    def check_and_add(self, session_id: str, message_id: str) -> bool:
        """Return True the first time a message is seen, False for repeats."""
        if self.maxsize <= 0 or not message_id:
            return True
        k = self.key(session_id, message_id)
        if k in self._keys:
            self._keys.move_to_end(k)
            return False
        self._keys[k] = None
        while len(self._keys) > self.maxsize:
            self._keys.popitem(last=False)
        return True

    def __len__(self) -> int:
        return len(self._keys)
