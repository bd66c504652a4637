"""
Мини‑леджер стейкинга с наградами по чекпоинтам (Python + FastAPI).

Участники кладут токены в стейк, снимают их и забирают награду. Пул наград фиксирован:
REWARD_RATE единиц за тик делится между участниками пропорционально их доле в общем стейке
на каждом отрезке времени. Время: высота PoH (монотонные sha256‑тики): каждое
/poh продвигает часы на 1, операции стейкинга часы не двигают, а фиксируются на текущей высоте.

Leader‑режим: тикает PoH, принимает подписанные deposit/withdraw/claim, складывает их в
entries/slots и отдаёт журнал /ledger.
Validator‑режим: принимает слоты через /ingest, пере‑считывает PoH, проверяет подписи и
проигрывает операции на тех же высотах, истории стейка и награды должны совпасть с лидером.

Install & run:
  pip install -e ".[test]"
  # Leader
  LEDGER_ROLE=leader fastapi dev app/main.py
  # Validator
  LEDGER_ROLE=validator fastapi dev app/main.py --port 8001
Test:
    pytest

API (leader):
  GET  /health | /poh | /bank | /ledger | /config | /pool
  GET  /claimable/{pubkey}[?breakdown=true] | /history/{pubkey}
  POST /airdrop  {"pubkey":"<hex32_ed25519>","amount":1000}
  POST /deposit  {"from":"<hex>","amount":10,"recent_hash":"<hex>","sig":"<hex64>"}
  POST /withdraw {"from":"<hex>","recent_hash":"<hex>","sig":"<hex64>"}
  POST /claim    {"from":"<hex>","recent_hash":"<hex>","sig":"<hex64>"}

API (validator):
  GET  те же read‑эндпойнты (состояние после replay)
  POST /ingest {"slots":[ SlotOut... ]}

Notes:
- Account id == Ed25519 **public key (hex)**.
- Подпись ставится на каноничный JSON {"op","from","amount","recent_hash"}; для withdraw/claim amount = 0.
- Награды платятся со счёта REWARD_POOL_ACCOUNT, его надо пополнить через /airdrop.
  Если резерва не хватает, claim отклоняется (transfer_failure), состояние не меняется.
"""

from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.responses import ORJSONResponse
from typing import Dict, Any, Optional
import hashlib
import logging
import time
import os
from collections import deque
from nacl.signing import VerifyKey
from nacl.exceptions import BadSignatureError

from app.bank import Bank
from app.errors import StakingError
from app.ledger import LedgerService, StakeNotification
from app.structured_logging import RequestLogMiddleware, configure_structured_logging, log_event


# --- параметры времени и журнала ---
ENTRY_TICKS = max(1, int(os.getenv("ENTRY_TICKS", "4")))
# каждые N тиков PoH формируем новый Entry (по умолчанию 4)

SLOT_TICKS  = max(1, int(os.getenv("SLOT_TICKS",  "12")))
# каждые N тиков закрываем Slot и переносим его в ledger (по умолчанию 12)

MAX_SLOTS   = max(1, int(os.getenv("MAX_SLOTS",  "256")))
# максимальное количество слотов, которые храним в памяти (/ledger)

# --- защита от stale hash и повторов ---
RECENT_HASH_WINDOW = max(1, int(os.getenv("RECENT_HASH_WINDOW", "32")))
SIG_CACHE_MAX      = max(1, int(os.getenv("SIG_CACHE_MAX", "4096")))

# --- стейкинг ---
REWARD_RATE = max(0, int(os.getenv("REWARD_RATE", "1")))
# единиц награды за тик на весь пул (участник со 100% стейка получает ровно REWARD_RATE за тик)

REWARD_POOL_ACCOUNT = os.getenv("REWARD_POOL_ACCOUNT", "reward-pool")
STAKE_VAULT_ACCOUNT = os.getenv("STAKE_VAULT_ACCOUNT", "stake-vault")

STAKE_OPS = ("deposit", "withdraw", "claim")

logger = logging.getLogger("ledger.app")


# ---------- PoH: простые "часы" ----------
def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()

def _is_hex(s: str) -> bool:
    try: bytes.fromhex(s); return True
    except ValueError: return False

def _check_key(pk: str) -> None:
    if len(pk) != 64 or not _is_hex(pk):
        raise HTTPException(status_code=400, detail="bad 'from' pubkey (hex32)")

def _check_sig(sig_hex: str) -> None:
    if len(sig_hex) != 128 or not _is_hex(sig_hex):
        raise HTTPException(status_code=400, detail="bad 'sig' (hex64)")

def _check_recent_hash(rh: str) -> None:
    if len(rh) != 64 or not _is_hex(rh):
        raise HTTPException(status_code=400, detail="bad 'recent_hash' (hex32)")


class PoH:
    """Мини-реализация Proof of History: последовательные sha256-тики. height == ordinal времени."""
    def __init__(self, seed: bytes) -> None:
        self._cur = hashlib.sha256(seed).digest()
        self._height = 0

    @property
    def height(self) -> int:
        return self._height

    def step(self, n: int = 1) -> None:
        for _ in range(n):
            self._cur = _sha256(self._cur)
        self._height += n

    def snapshot(self) -> dict:
        return {"height": self._height, "hash": self._cur.hex()}


def _canon_op_bytes(op: str, from_hex: str, amount: int, recent_hash: str) -> bytes:
    # Каноничный JSON в фиксированном порядке ключей, без пробелов
    return (
        "{"
        f"\"op\":\"{op}\","
        f"\"from\":\"{from_hex}\","
        f"\"amount\":{amount},"
        f"\"recent_hash\":\"{recent_hash}\""
        "}"
    ).encode("utf-8")


def _verify_op(op: str, from_pk: str, amount: int, recent: str, sig_hex: str) -> None:
    try:
        msg = _canon_op_bytes(op, from_pk, amount, recent)
        VerifyKey(bytes.fromhex(from_pk)).verify(msg, bytes.fromhex(sig_hex))
    except BadSignatureError:
        raise HTTPException(status_code=400, detail="bad signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="bad key or signature encoding")


def _apply_op(service: LedgerService, op: str, from_pk: str, amount: int, now: int) -> int:
    """Выполнить операцию стейкинга на высоте now; возвращает перемещённую сумму."""
    if op == "deposit":
        return service.deposit(from_pk, amount, now)
    if op == "withdraw":
        return service.withdraw(from_pk, now)
    if op == "claim":
        return service.claim(from_pk, now)
    raise ValueError(f"unknown op: {op}")


def build_app(role: str | None = None, reward_rate: Optional[int] = None) -> FastAPI:
    state: Dict[str, Any] = {"role": (role or "leader")}
    rate = REWARD_RATE if reward_rate is None else reward_rate

    configure_structured_logging()

    def _on_stake_event(note: StakeNotification) -> None:
        log_event(logger, f"stake.{note.kind}", role=state["role"],
                  participant=note.participant, amount=note.amount, at=note.time)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        SEED = os.getenv("POH_SEED", "genesis-seed").encode()
        state["poh"] = PoH(seed=SEED)
        state["bank"] = Bank()
        service = LedgerService(
            transfer=state["bank"].transfer,
            reward_rate=rate,
            vault_account=STAKE_VAULT_ACCOUNT,
            reward_account=REWARD_POOL_ACCOUNT,
        )
        service.subscribe(_on_stake_event)
        state["service"] = service

        # журнал слотов/энтри (только у лидера заполняется)
        state["slots"] = []              # список слотов: [{"slot", "started_ms", "entries": [...]}]
        state["cur_slot"] = None         # текущий незакрытый слот
        state["ticks_in_slot"] = 0
        state["ticks_since_entry"] = 0
        state["pending_txs"] = []        # принятые операции стейкинга для ближайшего entry
        state["pending_sys"] = []        # системные события (airdrop)
        state["slot_seq"] = 0

        initial_hash = state["poh"].snapshot()["hash"]
        state["recent_hashes"] = deque([initial_hash], maxlen=RECENT_HASH_WINDOW)
        # кэш сигнатур (anti-replay)
        state["sig_seen_set"] = set()
        state["sig_seen_q"]   = deque()

        log_event(logger, "app.start", role=state["role"], reward_rate=rate)
        yield

    app = FastAPI(
        title="Stake rewards ledger",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLogMiddleware)

    def _ensure_slot_started():
        if state["cur_slot"] is None:
            state["cur_slot"] = {
                "slot": state["slot_seq"],
                "started_ms": int(time.time() * 1000),
                "entries": []
            }
            state["ticks_in_slot"] = 0
            state["ticks_since_entry"] = 0

    def _flush_entry_if_needed(force: bool = False):
        due = force or state["ticks_since_entry"] >= ENTRY_TICKS
        if due and state["ticks_since_entry"] > 0 and state["cur_slot"] is not None:
            poh: PoH = state["poh"]
            entry = {
                "num_hashes": state["ticks_since_entry"],
                "hash": poh.snapshot()["hash"],
                "transactions": list(state["pending_txs"])
            }
            if state["pending_sys"]:
                entry["system"] = list(state["pending_sys"])
                state["pending_sys"].clear()
            state["cur_slot"]["entries"].append(entry)
            state["pending_txs"].clear()
            state["ticks_since_entry"] = 0

    def _flush_slot_if_needed():
        if state["ticks_in_slot"] >= SLOT_TICKS and state["cur_slot"] is not None:
            # хвост тиков без entry иначе выпал бы из цепочки PoH у валидатора
            _flush_entry_if_needed(force=True)
            state["slots"].append(state["cur_slot"])
            if len(state["slots"]) > MAX_SLOTS:
                state["slots"] = state["slots"][-MAX_SLOTS:]
            state["slot_seq"] += 1
            state["cur_slot"] = None

    def _remember_sig(sig_hex: str) -> None:
        state["sig_seen_set"].add(sig_hex)
        state["sig_seen_q"].append(sig_hex)
        if len(state["sig_seen_q"]) > SIG_CACHE_MAX:
            old = state["sig_seen_q"].popleft()
            state["sig_seen_set"].discard(old)

    def _stake_op(op: str, req: Dict[str, Any]) -> dict:
        """Общий путь deposit/withdraw/claim: проверка полей → окно recent_hash → anti-replay → подпись → сервис."""
        from_pk = str(req.get("from", "")).lower()
        recent  = str(req.get("recent_hash", "")).lower()
        sig_hex = str(req.get("sig", "")).lower()
        try:
            amount = int(req.get("amount", 0)) if op == "deposit" else 0
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="bad 'amount'")

        if not from_pk or not recent or not sig_hex:
            raise HTTPException(status_code=400, detail="missing fields (from,recent_hash,sig)")

        _check_key(from_pk)
        _check_sig(sig_hex)
        _check_recent_hash(recent)

        if recent not in state["recent_hashes"]:
            raise HTTPException(status_code=400, detail="stale recent_hash")
        if sig_hex in state["sig_seen_set"]:
            raise HTTPException(status_code=400, detail="duplicate signature")

        _verify_op(op, from_pk, amount, recent, sig_hex)

        now = state["poh"].height
        try:
            moved = _apply_op(state["service"], op, from_pk, amount, now)
        except StakingError as e:
            raise HTTPException(status_code=400, detail=str(e))

        _remember_sig(sig_hex)
        state["pending_txs"].append({
            "op": op, "from": from_pk, "amount": amount,
            "recent_hash": recent, "sig": sig_hex,
            "at": now, "moved": moved,
        })
        return {"ok": True, "amount": moved, "at": now}


    @app.get("/health", response_model=dict)
    async def health() -> dict:
        return {"ok": True}

    @app.get("/poh", response_model=dict)
    async def get_poh() -> dict:
        """Снимок PoH + один тик. В leader-режиме собирает entries/slots."""
        poh: PoH = state["poh"]
        poh.step(1)

        snap = poh.snapshot()
        state["recent_hashes"].append(snap["hash"])

        if state["role"] == "leader":
            _ensure_slot_started()
            state["ticks_in_slot"] += 1
            state["ticks_since_entry"] += 1
            _flush_entry_if_needed()
            _flush_slot_if_needed()

        cur_slot_no = (
            state["cur_slot"]["slot"] if (state["role"] == "leader" and state["cur_slot"] is not None)
            else max(state["slot_seq"] - 1, 0)
        )

        return {"height": snap["height"], "hash": snap["hash"], "slot": cur_slot_no}

    @app.post("/airdrop", response_model=dict)
    async def post_airdrop(req: Dict[str, Any]) -> dict:
        """Faucet: начислить amount на кошелёк участника или на резерв наград."""
        pubkey = str(req.get("pubkey", "")).lower()
        try:
            amount = int(req.get("amount", 0))
            state["bank"].airdrop(pubkey, amount)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))

        state["pending_sys"].append({
            "type": "airdrop",
            "to": pubkey,
            "amount": amount
        })
        return {"ok": True}

    @app.get("/bank", response_model=dict)
    async def get_bank() -> dict:
        balances = state["bank"].balances()
        return {"balances": balances, "total_supply": sum(balances.values())}

    @app.post("/deposit", response_model=dict)
    async def post_deposit(req: Dict[str, Any]) -> dict:
        return _stake_op("deposit", req)

    @app.post("/withdraw", response_model=dict)
    async def post_withdraw(req: Dict[str, Any]) -> dict:
        """Снять ВЕСЬ стейк; заработанная награда остаётся к выплате."""
        return _stake_op("withdraw", req)

    @app.post("/claim", response_model=dict)
    async def post_claim(req: Dict[str, Any]) -> dict:
        return _stake_op("claim", req)

    @app.get("/claimable/{pubkey}", response_model=dict)
    async def get_claimable(pubkey: str, breakdown: bool = False) -> dict:
        pubkey = pubkey.lower()
        service: LedgerService = state["service"]
        now = state["poh"].height
        body: Dict[str, Any] = {"pubkey": pubkey, "claimable": service.claimable(pubkey, now), "now": now}
        if breakdown:
            body["intervals"] = [
                {"start": iv.start, "end": iv.end, "stake": iv.stake, "total": iv.total, "reward": iv.reward}
                for iv in service.accrual_breakdown(pubkey, now)
            ]
        return body

    @app.get("/history/{pubkey}", response_model=dict)
    async def get_history(pubkey: str) -> dict:
        pubkey = pubkey.lower()
        events, checkpoint = state["service"].get_history(pubkey)
        return {
            "pubkey": pubkey,
            "events": [{"time": ev.time, "amount": ev.amount} for ev in events],
            "claim_checkpoint": checkpoint,
        }

    @app.get("/pool", response_model=dict)
    async def get_pool() -> dict:
        service: LedgerService = state["service"]
        bank: Bank = state["bank"]
        return {
            "total_staked": service.total_staked(),
            "reward_rate": service.reward_rate,
            "reserve": bank.balance_of(REWARD_POOL_ACCOUNT),
            "vault": bank.balance_of(STAKE_VAULT_ACCOUNT),
            "checkpoints": [{"time": cp.time, "total_staked": cp.total_staked} for cp in service.checkpoints()],
        }

    @app.get("/ledger", response_model=dict)
    async def get_ledger() -> dict:
        """Отдать накопленные слоты (leader)."""
        slots = list(state["slots"])
        if state["role"] == "leader":
            cur = state["cur_slot"]
            if cur is not None and cur["entries"]:
                slots = slots + [cur]
        return {"slots": slots}

    @app.post("/ingest", response_model=dict)
    async def post_ingest(payload: Dict[str, Any]) -> dict:
        """Валидатор: перепроверить PoH, применить airdrop'ы, проверить подписи и проиграть операции на их высотах."""
        slots = payload.get("slots")
        if not isinstance(slots, list):
            raise HTTPException(status_code=400, detail="invalid payload: slots[] required")

        poh: PoH = state["poh"]
        bank: Bank = state["bank"]
        service: LedgerService = state["service"]
        applied = 0

        for sl in slots:
            entries = sl.get("entries", [])
            if not isinstance(entries, list):
                raise HTTPException(status_code=400, detail="invalid slot: entries[] required")

            for e_idx, e in enumerate(entries):
                # 1) PoH: сделать num_hashes шагов и сверить конечный hash
                try:
                    nh = int(e["num_hashes"])
                    want_hash = str(e["hash"])
                except (KeyError, TypeError, ValueError):
                    raise HTTPException(status_code=400, detail="invalid entry format")

                poh.step(nh)
                got = poh.snapshot()["hash"]
                if got != want_hash:
                    raise HTTPException(
                        status_code=400,
                        detail=f"poh mismatch at slot={sl.get('slot')} entry_index={e_idx}"
                    )
                state["recent_hashes"].append(got)

                # 2a) системные записи (без подписей)
                sys_events = e.get("system", [])
                if not isinstance(sys_events, list):
                    raise HTTPException(status_code=400, detail="invalid entry: system[]")

                for ev in sys_events:
                    if ev.get("type") != "airdrop":
                        raise HTTPException(status_code=400, detail=f"unknown system event: {ev.get('type')}")
                    try:
                        bank.airdrop(str(ev["to"]), int(ev["amount"]))
                    except (KeyError, TypeError, ValueError) as ex:
                        raise HTTPException(status_code=400, detail=f"bad airdrop in ingest: {ex}")

                # 2b) операции стейкинга: подпись → replay на высоте "at" → сверка суммы
                txs = e.get("transactions", [])
                if not isinstance(txs, list):
                    raise HTTPException(status_code=400, detail="invalid entry: transactions[]")

                for tx in txs:
                    try:
                        op = str(tx["op"])
                        frm = str(tx["from"])
                        amt = int(tx["amount"])
                        rh = str(tx["recent_hash"])
                        sig_hex = str(tx["sig"])
                        at = int(tx["at"])
                        moved = int(tx["moved"])
                    except (KeyError, TypeError, ValueError):
                        raise HTTPException(status_code=400, detail="bad tx fields")

                    if op not in STAKE_OPS:
                        raise HTTPException(status_code=400, detail=f"unknown op: {op}")
                    if at > poh.height:
                        raise HTTPException(status_code=400, detail=f"tx at={at} is ahead of poh height={poh.height}")
                    if sig_hex in state["sig_seen_set"]:
                        raise HTTPException(status_code=400, detail="duplicate signature in ingest")

                    _verify_op(op, frm, amt, rh, sig_hex)

                    try:
                        got_moved = _apply_op(service, op, frm, amt, at)
                    except StakingError as ex:
                        raise HTTPException(status_code=400, detail=f"replay error: {ex}")
                    if got_moved != moved:
                        raise HTTPException(
                            status_code=400,
                            detail=f"replay mismatch: {op} by {frm} at={at} moved {got_moved} != {moved}"
                        )
                    _remember_sig(sig_hex)
                    applied += 1

        log_event(logger, "ingest.applied", slots=len(slots), ops=applied, height=poh.height)
        return {"ok": True, "applied": applied}

    @app.get("/config", response_model=dict)
    async def get_config() -> dict:
        return {
            "ENTRY_TICKS": ENTRY_TICKS,
            "SLOT_TICKS": SLOT_TICKS,
            "MAX_SLOTS": MAX_SLOTS,
            "RECENT_HASH_WINDOW": RECENT_HASH_WINDOW,
            "SIG_CACHE_MAX": SIG_CACHE_MAX,
            "REWARD_RATE": rate,
            "REWARD_POOL_ACCOUNT": REWARD_POOL_ACCOUNT,
            "STAKE_VAULT_ACCOUNT": STAKE_VAULT_ACCOUNT,
            "ROLE": state["role"],
        }

    return app

# для fastapi dev app/main.py
app = build_app(role=os.getenv("LEDGER_ROLE", "leader"))
