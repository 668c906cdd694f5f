"""
Incremental extraction of the answer text from a JSON completion being streamed
"""
import json
import re

_ANSWER_KEY = re.compile(r'"answer"\s*:\s*"')
_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


class AnswerDeltaExtractor:
    """
    Feed raw completion fragments, get back newly decoded ``answer`` text.

    The model is asked for a JSON object; the value of its ``answer`` key is
    decoded as it arrives so clients can render it before the object closes.
    Escape sequences split across fragments are held until complete.
    """

    SEEKING = "seeking"
    IN_ANSWER = "in_answer"
    DONE = "done"

    def __init__(self):
        self.state = self.SEEKING
        self._pending = ""
        self.text = ""

    def feed(self, fragment: str) -> str:
        if self.state == self.DONE or not fragment:
            return ""

        self._pending += fragment
        if self.state == self.SEEKING:
            match = _ANSWER_KEY.search(self._pending)
            if match is None:
                return ""
            self.state = self.IN_ANSWER
            self._pending = self._pending[match.end():]

        decoded = self._decode_pending()
        self.text += decoded
        return decoded

    def _decode_pending(self) -> str:
        out = []
        pending = self._pending
        i = 0
        while i < len(pending):
            char = pending[i]
            if char == '"':
                self.state = self.DONE
                self._pending = ""
                return "".join(out)
            if char != "\\":
                out.append(char)
                i += 1
                continue

            if i + 1 >= len(pending):
                break
            marker = pending[i + 1]
            if marker in _SIMPLE_ESCAPES:
                out.append(_SIMPLE_ESCAPES[marker])
                i += 2
                continue
            if marker != "u":
                # invalid escape; keep it literally
                out.append(marker)
                i += 2
                continue

            if i + 6 > len(pending):
                break
            code = int(pending[i + 2:i + 6], 16) if _is_hex(pending[i + 2:i + 6]) else None
            if code is None:
                out.append(pending[i:i + 6])
                i += 6
                continue
            if 0xD800 <= code <= 0xDBFF:
                if i + 12 > len(pending):
                    break
                pair = pending[i:i + 12]
                try:
                    out.append(json.loads(f'"{pair}"'))
                except json.JSONDecodeError:
                    out.append(chr(code))
                    i += 6
                    continue
                i += 12
                continue
            out.append(chr(code))
            i += 6

        self._pending = pending[i:]
        return "".join(out)


def _is_hex(value: str) -> bool:
    return len(value) == 4 and all(c in "0123456789abcdefABCDEF" for c in value)
