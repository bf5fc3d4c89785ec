"""Tests for the session, ledger and settlement endpoints."""

from contextlib import contextmanager
from unittest.mock import patch

import pytest


@contextmanager
def _use_db(test_db):
    with patch("potsettle.routes.sessions.get_database", return_value=test_db), \
            patch("potsettle.routes.settlement.get_database", return_value=test_db):
        yield


async def _create_game(client, *names):
    resp = await client.post("/api/sessions", json={"name": "Friday game"})
    assert resp.status_code == 201
    session_id = resp.json()["id"]
    player_ids = []
    for name in names:
        resp = await client.post(
            f"/api/sessions/{session_id}/players", json={"name": name}
        )
        assert resp.status_code == 201
        player_ids.append(resp.json()["id"])
    return session_id, player_ids


@pytest.mark.asyncio
class TestSessionEndpoints:

    async def test_create_and_get_session(self, client, test_db):
        with _use_db(test_db):
            session_id, _ = await _create_game(client, "Alice", "Bob")
            resp = await client.get(f"/api/sessions/{session_id}")

        assert resp.status_code == 200
        data = resp.json()
        assert data["session"]["status"] == "created"
        assert data["session"]["total_pot"] == "0.00"
        assert [p["name"] for p in data["players"]] == ["Alice", "Bob"]

    async def test_unknown_session_404(self, client, test_db):
        with _use_db(test_db):
            resp = await client.get("/api/sessions/000000000000000000000000")
        assert resp.status_code == 404

    async def test_duplicate_player_422(self, client, test_db):
        with _use_db(test_db):
            session_id, _ = await _create_game(client, "Alice")
            resp = await client.post(
                f"/api/sessions/{session_id}/players", json={"name": "ALICE"}
            )
        assert resp.status_code == 422
        assert resp.json()["code"] == "DUPLICATE_PLAYER_NAME"

    async def test_start_session(self, client, test_db):
        with _use_db(test_db):
            session_id, _ = await _create_game(client, "Alice", "Bob")
            resp = await client.post(f"/api/sessions/{session_id}/start")
        assert resp.status_code == 200
        assert resp.json()["session"]["status"] == "active"


@pytest.mark.asyncio
class TestTransactionEndpoints:

    async def test_buy_in_accepted(self, client, test_db):
        with _use_db(test_db):
            session_id, (alice, _) = await _create_game(client, "Alice", "Bob")
            resp = await client.post(
                f"/api/sessions/{session_id}/buy-ins",
                json={"player_id": alice, "amount": 50},
            )

        assert resp.status_code == 201
        data = resp.json()
        assert data["transaction"]["type"] == "buy_in"
        assert data["transaction"]["amount"] == "50.00"
        assert data["transaction"]["pot_after"] == "50.00"
        assert data["validation"]["is_valid"] is True

    async def test_buy_in_rejection_carries_validation_result(self, client, test_db):
        with _use_db(test_db):
            session_id, (alice, _) = await _create_game(client, "Alice", "Bob")
            resp = await client.post(
                f"/api/sessions/{session_id}/buy-ins",
                json={"player_id": alice, "amount": "2.50"},
            )

        assert resp.status_code == 422
        data = resp.json()
        assert data["is_valid"] is False
        assert data["code"] == "AMOUNT_TOO_LOW"
        assert data["suggested_action"]

    async def test_non_numeric_amount_rejected(self, client, test_db):
        with _use_db(test_db):
            session_id, (alice, _) = await _create_game(client, "Alice", "Bob")
            resp = await client.post(
                f"/api/sessions/{session_id}/buy-ins",
                json={"player_id": alice, "amount": "lots"},
            )
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_AMOUNT"

    async def test_last_player_cash_out(self, client, test_db):
        with _use_db(test_db):
            session_id, (alice, bob) = await _create_game(client, "Alice", "Bob")
            for player in (alice, bob):
                await client.post(
                    f"/api/sessions/{session_id}/buy-ins",
                    json={"player_id": player, "amount": "50.00"},
                )
            first = await client.post(
                f"/api/sessions/{session_id}/cash-outs",
                json={"player_id": alice, "amount": "80.00"},
            )
            short = await client.post(
                f"/api/sessions/{session_id}/cash-outs",
                json={"player_id": bob, "amount": "10.00"},
            )
            txns = await client.get(f"/api/sessions/{session_id}/transactions")

        assert first.status_code == 201
        assert short.status_code == 422
        body = short.json()
        assert body["code"] == "LAST_PLAYER_EXACT_AMOUNT_REQUIRED"
        assert "must cash out exactly $20.00" in body["message"]
        assert [t["type"] for t in txns.json()] == ["buy_in", "buy_in", "cash_out"]


@pytest.mark.asyncio
class TestSettlementEndpoints:

    async def _played(self, client):
        session_id, (alice, bob, carol) = await _create_game(
            client, "Alice", "Bob", "Carol"
        )
        for player in (alice, bob, carol):
            await client.post(
                f"/api/sessions/{session_id}/buy-ins",
                json={"player_id": player, "amount": "50"},
            )
        await client.post(
            f"/api/sessions/{session_id}/cash-outs",
            json={"player_id": alice, "amount": "90", "cash_out_completely": True},
        )
        return session_id, alice, bob, carol

    async def test_settle_session(self, client, test_db):
        with _use_db(test_db):
            session_id, alice, bob, carol = await self._played(client)
            resp = await client.post(
                f"/api/sessions/{session_id}/settlement",
                json={"final_chip_values": {bob: "60", carol: "0"}},
            )
            detail = await client.get(f"/api/sessions/{session_id}")

        assert resp.status_code == 200
        data = resp.json()
        assert data["is_valid"] is True
        assert data["mathematical_proof"]["is_valid"] is True
        assert data["metrics"]["optimized_payment_count"] == 2
        assert detail.json()["session"]["status"] == "completed"

    async def test_missing_final_chips_409(self, client, test_db):
        with _use_db(test_db):
            session_id, *_ = await self._played(client)
            resp = await client.post(f"/api/sessions/{session_id}/settlement")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "INVARIANT_VIOLATION"

    async def test_unbalanced_final_chips_409(self, client, test_db):
        with _use_db(test_db):
            session_id, alice, bob, carol = await self._played(client)
            resp = await client.post(
                f"/api/sessions/{session_id}/settlement",
                json={"final_chip_values": {bob: "100", carol: "0"}},
            )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "UNBALANCED_POSITIONS"

    async def test_select_alternative(self, client, test_db):
        with _use_db(test_db):
            session_id, alice, bob, carol = await self._played(client)
            finals = {"final_chip_values": {bob: "60", carol: "0"}}
            resp = await client.post(
                f"/api/sessions/{session_id}/settlement/alternatives/balanced_flow",
                json=finals,
            )
            unknown = await client.post(
                f"/api/sessions/{session_id}/settlement/alternatives/coin_flip",
                json=finals,
            )

        assert resp.status_code == 200
        assert resp.json()["algorithm"] == "balanced_flow"
        assert resp.json()["is_valid"] is True
        assert unknown.status_code == 404


@pytest.mark.asyncio
class TestUndoAndBankEndpoints:

    async def _funded(self, client):
        session_id, (alice, bob) = await _create_game(client, "Alice", "Bob")
        txn_ids = []
        for player in (alice, bob):
            resp = await client.post(
                f"/api/sessions/{session_id}/buy-ins",
                json={"player_id": player, "amount": "50"},
            )
            txn_ids.append(resp.json()["transaction"]["id"])
        return session_id, alice, bob, txn_ids

    async def test_undo_buy_in(self, client, test_db):
        with _use_db(test_db):
            session_id, alice, bob, (first, _) = await self._funded(client)
            resp = await client.post(
                f"/api/sessions/{session_id}/transactions/{first}/undo",
                json={"reason": "entered twice"},
            )
            again = await client.post(
                f"/api/sessions/{session_id}/transactions/{first}/undo"
            )
            bank = await client.get(f"/api/sessions/{session_id}/bank")

        assert resp.status_code == 200
        assert resp.json()["transaction"]["is_voided"] is True
        assert again.status_code == 422
        assert again.json()["code"] == "TRANSACTION_ALREADY_VOIDED"
        assert bank.json()["session_pot"] == "50.00"
        assert bank.json()["is_balanced"] is True

    async def test_early_cash_out_quote(self, client, test_db):
        with _use_db(test_db):
            session_id, alice, bob, _ = await self._funded(client)
            resp = await client.post(
                f"/api/sessions/{session_id}/players/{alice}/early-cash-out",
                json={"chip_value": "65.50"},
            )
            bad = await client.post(
                f"/api/sessions/{session_id}/players/{alice}/early-cash-out",
                json={"chip_value": "-3"},
            )

        assert resp.status_code == 200
        data = resp.json()
        assert data["cash_out_amount"] == "65.50"
        assert data["net_position"] == "15.50"
        assert data["direction"] == "payment_to_player"
        assert data["bank_balance_after"] == "34.50"
        assert bad.status_code == 409
        assert bad.json()["error"]["code"] == "INVARIANT_VIOLATION"
