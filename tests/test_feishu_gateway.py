import base64
import hashlib
import hmac
import json
import os

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

from services import segment as seg
from drivers.feishu.cipher import Cipher
from drivers.feishu.gateway import WebhookGateway
from drivers.feishu.normalize import RECEIVE_EVENT, adapt_event

SECRET = "test-encrypt-key"


def encrypt(plaintext: str, key: str = SECRET) -> str:
    iv = os.urandom(16)
    aes = AES.new(hashlib.sha256(key.encode()).digest(), AES.MODE_CBC, iv)
    return base64.b64encode(iv + aes.encrypt(pad(plaintext.encode(), AES.block_size))).decode()


def sign(timestamp: str, nonce: str, body: bytes, key: str = SECRET) -> str:
    return hmac.new(key.encode(), timestamp.encode() + nonce.encode() + body, hashlib.sha256).hexdigest()


def receive_event(text="hi", mentions=None, sender_type="user", message_type="text", **message):
    return {
        "schema": "2.0",
        "header": {"event_type": RECEIVE_EVENT},
        "event": {
            "sender": {"sender_id": {"open_id": "ou_sender"}, "sender_type": sender_type},
            "message": {
                "message_id": "om_1",
                "chat_id": "oc_1",
                "message_type": message_type,
                "content": json.dumps({"text": text}),
                "mentions": mentions or [],
                "create_time": "1609073151345",
                **message,
            },
        },
    }


class Recorder:
    def __init__(self):
        self.bodies = []

    async def __call__(self, body):
        self.bodies.append(body)


async def _client(gateway):
    app = web.Application()
    app.router.add_post("/feishu", gateway.handle)
    client = TestClient(TestServer(app))
    await client.start_server()
    return client


@pytest_asyncio.fixture
async def secured():
    recorder = Recorder()
    gateway = WebhookGateway(Cipher(SECRET))
    gateway.on(RECEIVE_EVENT, recorder)
    client = await _client(gateway)
    try:
        yield client, recorder
    finally:
        await client.close()


@pytest_asyncio.fixture
async def open_gateway():
    recorder = Recorder()
    gateway = WebhookGateway()
    gateway.on(RECEIVE_EVENT, recorder)
    client = await _client(gateway)
    try:
        yield client, recorder
    finally:
        await client.close()


def test_signature_is_hmac_of_timestamp_nonce_body():
    body = b'{"a":1}'
    assert Cipher(SECRET).signature("1700000000", "n0nce", body) == sign("1700000000", "n0nce", body)


def test_decrypt_round_trip():
    assert Cipher(SECRET).decrypt(encrypt('{"x": "y"}')) == '{"x": "y"}'


@pytest.mark.asyncio
async def test_valid_signature_is_dispatched(secured):
    client, recorder = secured
    raw = json.dumps(receive_event()).encode()
    headers = {
        "X-Lark-Request-Timestamp": "1700000000",
        "X-Lark-Request-Nonce": "abc",
        "X-Lark-Signature": sign("1700000000", "abc", raw),
    }
    resp = await client.post("/feishu", data=raw, headers=headers)
    assert resp.status == 200
    assert len(recorder.bodies) == 1


@pytest.mark.asyncio
async def test_bad_signature_is_forbidden(secured):
    client, recorder = secured
    headers = {
        "X-Lark-Request-Timestamp": "1700000000",
        "X-Lark-Request-Nonce": "abc",
        "X-Lark-Signature": "0" * 64,
    }
    # not even valid JSON: a rejected body must never be parsed
    resp = await client.post("/feishu", data=b"{not json", headers=headers)
    assert resp.status == 403
    assert recorder.bodies == []


def test_non_ascii_signature_is_a_mismatch():
    assert Cipher(SECRET).verify("é" * 64, "1700000000", "abc", b"{}") is False


@pytest.mark.asyncio
async def test_non_ascii_signature_is_forbidden(secured):
    client, recorder = secured
    headers = {
        "X-Lark-Request-Timestamp": "1700000000",
        "X-Lark-Request-Nonce": "abc",
        "X-Lark-Signature": "é" * 64,
    }
    resp = await client.post("/feishu", data=json.dumps(receive_event()).encode(), headers=headers)
    assert resp.status == 403
    assert recorder.bodies == []


@pytest.mark.asyncio
async def test_missing_signature_header_is_not_a_failure(secured):
    client, recorder = secured
    resp = await client.post("/feishu", data=json.dumps(receive_event()).encode())
    assert resp.status == 200
    assert len(recorder.bodies) == 1


@pytest.mark.asyncio
async def test_challenge_is_echoed_without_dispatch(open_gateway):
    client, recorder = open_gateway
    resp = await client.post("/feishu", json={"type": "url_verification", "challenge": "abc123"})
    assert resp.status == 200
    assert await resp.json() == {"challenge": "abc123"}
    assert recorder.bodies == []


@pytest.mark.asyncio
async def test_encrypted_challenge_is_decrypted_first(secured):
    client, recorder = secured
    inner = json.dumps({"type": "url_verification", "challenge": "s3cr3t"})
    resp = await client.post("/feishu", json={"encrypt": encrypt(inner)})
    assert await resp.json() == {"challenge": "s3cr3t"}
    assert recorder.bodies == []


@pytest.mark.asyncio
async def test_encrypted_event_is_decrypted_and_dispatched(secured):
    client, recorder = secured
    resp = await client.post("/feishu", json={"encrypt": encrypt(json.dumps(receive_event("yo")))})
    assert resp.status == 200
    assert recorder.bodies[0]["event"]["message"]["chat_id"] == "oc_1"


@pytest.mark.asyncio
async def test_encrypt_field_passes_through_without_key(open_gateway):
    client, recorder = open_gateway
    body = {"encrypt": "opaque", "header": {"event_type": RECEIVE_EVENT}}
    resp = await client.post("/feishu", json=body)
    assert resp.status == 200
    assert recorder.bodies == [body]


@pytest.mark.asyncio
async def test_garbage_ciphertext_is_bad_request(secured):
    client, recorder = secured
    resp = await client.post("/feishu", json={"encrypt": "bm90IGEgY2lwaGVydGV4dA=="})
    assert resp.status == 400
    assert recorder.bodies == []


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored(open_gateway):
    client, recorder = open_gateway
    resp = await client.post("/feishu", json={"header": {"event_type": "im.chat.disbanded_v1"}})
    assert resp.status == 200
    assert await resp.json() == {}
    assert recorder.bodies == []


def test_receive_event_normalization():
    body = receive_event(
        "@_user_1 hello @_all",
        mentions=[{"key": "@_user_1", "id": {"open_id": "ou_42"}, "name": "Tom"}],
        parent_id="om_0",
    )
    event = adapt_event(body, "fs")
    assert event.channel == {"chat_id": "oc_1"}
    assert event.message.chain == [seg.mention_user("ou_42"), seg.text(" hello "), seg.mention_all()]
    assert event.message.user_id == "ou_sender"
    assert (event.message.quote.channel_id, event.message.quote.message_id) == ("oc_1", "om_0")


def test_app_and_non_text_messages_are_dropped():
    assert adapt_event(receive_event(sender_type="app"), "fs") is None
    assert adapt_event(receive_event(message_type="image"), "fs") is None
    assert adapt_event(receive_event("   "), "fs") is None
