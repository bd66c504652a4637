# tests/test_stake_flow.py
from fastapi.testclient import TestClient
import importlib
from nacl.signing import SigningKey

main = importlib.import_module("app.main")


def _pk(sk: SigningKey) -> str:
    return sk.verify_key.encode().hex()


def _fund(c, *keys, reserve: int = 1000):
    for sk in keys:
        assert c.post("/airdrop", json={"pubkey": _pk(sk), "amount": 100}).status_code == 200
    assert c.post("/airdrop", json={"pubkey": main.REWARD_POOL_ACCOUNT, "amount": reserve}).status_code == 200


def test_single_staker_full_rate(signed_op):
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)

        recent = c.get("/poh").json()["hash"]
        r = c.post("/deposit", json=signed_op(a, "deposit", recent, 10))
        assert r.status_code == 200, r.text
        assert r.json()["amount"] == 10

        for _ in range(10):
            c.get("/poh")
        body = c.get(f"/claimable/{_pk(a)}").json()
        assert body["claimable"] == 10


def test_two_stakers_scenario(signed_op):
    """A кладёт 10; через 9 тиков у A 9. B кладёт 10; ещё через 10 тиков A=14, B=5."""
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a, b = SigningKey.generate(), SigningKey.generate()
        _fund(c, a, b)

        recent = c.get("/poh").json()["hash"]
        assert c.post("/deposit", json=signed_op(a, "deposit", recent, 10)).status_code == 200
        for _ in range(9):
            c.get("/poh")
        assert c.get(f"/claimable/{_pk(a)}").json()["claimable"] == 9

        # recent тот же — ещё в окне
        assert c.post("/deposit", json=signed_op(b, "deposit", recent, 10)).status_code == 200
        for _ in range(10):
            c.get("/poh")

        ca = c.get(f"/claimable/{_pk(a)}?breakdown=true").json()
        cb = c.get(f"/claimable/{_pk(b)}").json()
        assert ca["claimable"] == 14
        assert cb["claimable"] == 5
        assert [iv["reward"] for iv in ca["intervals"]] == [9, 5]
        assert ca["intervals"][1]["total"] == 20


def test_claim_then_zero_and_checkpoint(signed_op):
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)

        recent = c.get("/poh").json()["hash"]
        assert c.post("/deposit", json=signed_op(a, "deposit", recent, 10)).status_code == 200
        for _ in range(4):
            recent = c.get("/poh").json()["hash"]

        r = c.post("/claim", json=signed_op(a, "claim", recent))
        assert r.status_code == 200, r.text
        assert r.json()["amount"] == 4
        now = r.json()["at"]

        assert c.get(f"/claimable/{_pk(a)}").json()["claimable"] == 0
        hist = c.get(f"/history/{_pk(a)}").json()
        assert hist["claim_checkpoint"] == now
        assert c.get("/bank").json()["balances"][_pk(a)] == 90 + 4
        assert c.get("/pool").json()["reserve"] == 1000 - 4

        # через тик набегает ровно 1
        first_recent = recent
        recent = c.get("/poh").json()["hash"]
        r2 = c.post("/claim", json=signed_op(a, "claim", recent))
        assert r2.status_code == 200 and r2.json()["amount"] == 1

        # на том же тике клеймить уже нечего (другой recent_hash → другая подпись)
        r3 = c.post("/claim", json=signed_op(a, "claim", first_recent))
        assert r3.status_code == 400
        assert r3.json()["detail"].startswith("no_claimable")


def test_claim_without_reward_rejected(signed_op):
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)
        recent = c.get("/poh").json()["hash"]
        r = c.post("/claim", json=signed_op(a, "claim", recent))
        assert r.status_code == 400
        assert r.json()["detail"].startswith("no_claimable")


def test_withdraw_all_keeps_earned(signed_op):
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)
        recent = c.get("/poh").json()["hash"]
        assert c.post("/deposit", json=signed_op(a, "deposit", recent, 10)).status_code == 200
        assert c.post("/deposit", json=signed_op(a, "deposit", recent, 15)).status_code == 200
        for _ in range(6):
            recent = c.get("/poh").json()["hash"]

        r = c.post("/withdraw", json=signed_op(a, "withdraw", recent))
        assert r.status_code == 200, r.text
        assert r.json()["amount"] == 25
        at = r.json()["at"]

        hist = c.get(f"/history/{_pk(a)}").json()
        assert hist["events"][-1] == {"time": at, "amount": 0}
        assert c.get("/bank").json()["balances"][_pk(a)] == 100
        assert c.get("/pool").json()["total_staked"] == 0
        assert c.get(f"/claimable/{_pk(a)}").json()["claimable"] == 6

        # снова снять нечего
        r = c.post("/withdraw", json=signed_op(a, "withdraw", c.get("/poh").json()["hash"]))
        assert r.status_code == 400
        assert r.json()["detail"].startswith("no_stake")
        # пока пул пуст, награда не копится
        for _ in range(5):
            c.get("/poh")
        assert c.get(f"/claimable/{_pk(a)}").json()["claimable"] == 6


def test_zero_deposit_rejected(signed_op):
    app = main.build_app(role="leader")
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)
        recent = c.get("/poh").json()["hash"]
        r = c.post("/deposit", json=signed_op(a, "deposit", recent, 0))
        assert r.status_code == 400
        assert r.json()["detail"].startswith("invalid_amount")
        assert c.get(f"/history/{_pk(a)}").json() == {"pubkey": _pk(a), "events": [], "claim_checkpoint": None}


def test_deposit_over_balance_is_transfer_failure(signed_op):
    app = main.build_app(role="leader")
    with TestClient(app) as c:
        a = SigningKey.generate()
        _fund(c, a)
        recent = c.get("/poh").json()["hash"]
        r = c.post("/deposit", json=signed_op(a, "deposit", recent, 101))
        assert r.status_code == 400
        assert r.json()["detail"].startswith("transfer_failure")
        # ни записей в истории, ни движения денег
        assert c.get(f"/history/{_pk(a)}").json()["events"] == []
        assert c.get("/pool").json()["checkpoints"] == []
        assert c.get("/bank").json()["balances"][_pk(a)] == 100


def test_claim_with_empty_reserve_is_transfer_failure(signed_op):
    app = main.build_app(role="leader", reward_rate=1)
    with TestClient(app) as c:
        a = SigningKey.generate()
        assert c.post("/airdrop", json={"pubkey": _pk(a), "amount": 10}).status_code == 200
        recent = c.get("/poh").json()["hash"]
        assert c.post("/deposit", json=signed_op(a, "deposit", recent, 10)).status_code == 200
        for _ in range(3):
            recent = c.get("/poh").json()["hash"]
        r = c.post("/claim", json=signed_op(a, "claim", recent))
        assert r.status_code == 400
        assert r.json()["detail"].startswith("transfer_failure")
        assert c.get(f"/history/{_pk(a)}").json()["claim_checkpoint"] is None
        assert c.get(f"/claimable/{_pk(a)}").json()["claimable"] == 3


def test_unknown_participant_queries():
    app = main.build_app(role="leader")
    with TestClient(app) as c:
        pk = "cd" * 32
        assert c.get(f"/claimable/{pk}").json()["claimable"] == 0
        assert c.get(f"/history/{pk}").json()["claim_checkpoint"] is None
