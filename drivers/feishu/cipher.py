# Event security for Feishu / Lark webhooks.
#
# https://open.feishu.cn/document/ukTMukTMukTM/uYDNxYjL2QTM24iN0EjN/event-security-verification
#
# One Cipher is built from the configured encrypt key when the driver starts
# and is only read afterwards, so it is shared by every request handler.

import base64
import binascii
import hashlib
import hmac

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from services.error import InvalidMessageError


class Cipher:

    def __init__(self, key: str):
        self._secret = key.encode("utf-8")
        self._key = hashlib.sha256(self._secret).digest()

    def signature(self, timestamp: str, nonce: str, body: bytes) -> str:
        """HMAC-SHA256 over ``timestamp + nonce + body``, hex encoded."""
        message = timestamp.encode("utf-8") + nonce.encode("utf-8") + body
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, signature: str, timestamp: str, nonce: str, body: bytes) -> bool:
        # header values may carry non-ASCII text, which compare_digest refuses for str
        expected = self.signature(timestamp, nonce, body).encode("ascii")
        return hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape"))

    def decrypt(self, encrypted: str) -> str:
        """AES-256-CBC; the IV is the first block of the decoded ciphertext."""
        try:
            raw = base64.b64decode(encrypted)
            iv, data = raw[:AES.block_size], raw[AES.block_size:]
            cipher = AES.new(self._key, AES.MODE_CBC, iv)
            return unpad(cipher.decrypt(data), AES.block_size).decode("utf-8")
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise InvalidMessageError(f"cannot decrypt event payload: {e}") from e
