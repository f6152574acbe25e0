import hashlib
import hmac
from typing import Iterable, Union

Part = Union[str, int]

DELIMITER = "|"


def sign(parts: Iterable[Part], secret: str) -> str:
    """SHA-384 hex digest of ``part1|part2|...|secret``."""
    message = DELIMITER.join([*(str(part) for part in parts), secret])
    return hashlib.sha384(message.encode("utf-8")).hexdigest()


def verify(parts: Iterable[Part], secret: str, signature: str) -> bool:
    expected = sign(parts, secret)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))
