# tests/conftest.py
import importlib
import pytest
from fastapi.testclient import TestClient

@pytest.fixture()
def app():
    main = importlib.import_module("app.main")
    return main.build_app(role="leader", reward_rate=1)

@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c

@pytest.fixture()
def canon_msg():
    def _canon(op: str, frm: str, amount: int, recent: str) -> bytes:
        return (
            "{"
            f"\"op\":\"{op}\","
            f"\"from\":\"{frm}\","
            f"\"amount\":{amount},"
            f"\"recent_hash\":\"{recent}\""
            "}"
        ).encode("utf-8")
    return _canon

@pytest.fixture()
def signed_op(canon_msg):
    """Тело запроса для /deposit, /withdraw, /claim, подписанное ключом sk."""
    def _op(sk, op: str, recent: str, amount: int = 0) -> dict:
        frm = sk.verify_key.encode().hex()
        sig = sk.sign(canon_msg(op, frm, amount, recent)).signature.hex()
        body = {"from": frm, "recent_hash": recent, "sig": sig}
        if op == "deposit":
            body["amount"] = amount
        return body
    return _op
