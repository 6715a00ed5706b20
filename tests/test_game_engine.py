from __future__ import annotations

import asyncio
import re

import pytest
from openpyxl import load_workbook

from chicken_vault.models.game import AUTO_CALLER, GameConfig
from chicken_vault.services.errors import (
    ConfigurationFailure,
    DataIntegrityViolation,
    PreconditionViolation,
)
from chicken_vault.services.game_engine import (
    INVALID_FORMAT_MESSAGE,
    ROUND_MISMATCH_MESSAGE,
    GameEngine,
)

from conftest import seat_players


async def _start_game(engine: GameEngine) -> None:
    seat_players(engine)
    await engine.initialize_workbook()
    engine.start_game()


async def _to_scoring(engine: GameEngine, secret: str = "QD") -> None:
    """Partie démarrée, carte fixée, deux questions posées, coffre appelé par le joueur au tour."""
    await _start_game(engine)
    engine.set_secret_card(secret)
    engine.start_investigation()
    engine.resolve_question("Is it red?", "YES")
    engine.resolve_question("Is it a face card?", "YES")
    caller = engine.players[engine.round.current_turn_seat_index]
    await engine.call_vault(caller.id)


def _by_name(engine: GameEngine, name: str):
    return next(p for p in engine.players if p.name == name)


# -----------------------------
# Construction & lobby
# -----------------------------
def test_missing_workbook_path_fails_fast(tmp_path):
    with pytest.raises(ConfigurationFailure):
        GameEngine(GameConfig(workbook_path=""))
    with pytest.raises(ConfigurationFailure):
        GameEngine(GameConfig(workbook_path=str(tmp_path / "nope.xlsx")))


def test_add_remove_and_reorder_players(make_engine):
    engine = make_engine()
    ana, ben, cy = seat_players(engine)

    with pytest.raises(DataIntegrityViolation):
        engine.add_player("   ", "A")

    engine.remove_player(ben.id)
    assert [(p.name, p.seat_index) for p in engine.players] == [("Ana", 0), ("Cy", 1)]

    engine.reorder_players([cy.id, ana.id])
    snapshot = engine.get_snapshot()
    assert [(p.name, p.seat_index) for p in snapshot.players] == [("Cy", 0), ("Ana", 1)]

    with pytest.raises(DataIntegrityViolation):
        engine.reorder_players([cy.id, cy.id])
    with pytest.raises(DataIntegrityViolation):
        engine.reorder_players([cy.id])


def test_update_player(make_engine):
    engine = make_engine()
    ana, _ben, _cy = seat_players(engine)

    updated = engine.update_player(ana.id, name="  Anna ", team="B")
    assert (updated.name, updated.team) == ("Anna", "B")
    with pytest.raises(DataIntegrityViolation):
        engine.update_player(ana.id, name=" ")
    with pytest.raises(PreconditionViolation):
        engine.update_player("missing", name="x")


def test_config_is_clamped_and_path_is_locked(make_engine):
    engine = make_engine()

    config = engine.update_config({"rounds": 50, "poll_interval_ms": 10, "vault_start": 0})
    assert (config.rounds, config.poll_interval_ms, config.vault_start) == (10, 1000, 1)

    with pytest.raises(PreconditionViolation, match="env-locked"):
        engine.update_config({"workbook_path": "/tmp/other.xlsx"})


def test_preflight_requires_both_confirmations(make_engine):
    engine = make_engine()
    engine.set_preflight(True, False)
    assert not engine.preflight.preflight_passed
    engine.set_preflight(True, True)
    assert engine.preflight.preflight_passed


def test_initialize_requires_preflight_and_players(make_engine):
    engine = make_engine()

    async def scenario():
        engine.add_player("Ana", "A")
        engine.add_player("Ben", "B")
        with pytest.raises(PreconditionViolation, match="Preflight"):
            await engine.initialize_workbook()
        engine.set_preflight(True, True)
        await engine.initialize_workbook()

    asyncio.run(scenario())
    assert engine.workbook_initialized
    assert [p.sheet_name for p in engine.players] == ["P01_Ana", "P02_Ben"]
    assert engine.bus.of_type("toast")[-1].payload["message"] == "Workbook initialized successfully."


def test_roster_change_invalidates_workbook(make_engine):
    engine = make_engine()

    async def scenario():
        seat_players(engine)
        await engine.initialize_workbook()
        engine.add_player("Dee", "B")

    asyncio.run(scenario())
    assert not engine.workbook_initialized
    with pytest.raises(PreconditionViolation, match="Initialize workbook"):
        engine.start_game()


def test_lobby_controls_are_locked_after_start(make_engine):
    engine = make_engine()
    asyncio.run(_start_game(engine))

    assert engine.phase == "SETUP"
    with pytest.raises(PreconditionViolation):
        engine.add_player("Late", "A")
    with pytest.raises(PreconditionViolation):
        engine.update_config({"rounds": 2})


# -----------------------------
# Setup & enquête
# -----------------------------
def test_start_game_picks_dealer_and_first_turn(make_engine):
    engine = make_engine()
    asyncio.run(_start_game(engine))

    assert engine.round.round_number == 1
    assert engine.round.dealer_seat_index == 2
    assert engine.round.dealer_id == _by_name(engine, "Cy").id
    assert engine.round.current_turn_seat_index == 0
    assert engine.round.vault_value == 4


def test_secret_card_validation(make_engine):
    engine = make_engine()
    asyncio.run(_start_game(engine))

    with pytest.raises(DataIntegrityViolation):
        engine.set_secret_card("ZZ")
    engine.set_secret_card(" 10h ")
    assert engine.private.secret_card == "TH"
    # jamais exposée dans le snapshot public
    assert '"TH"' not in engine.get_snapshot().model_dump_json()


def test_pick_insider_publishes_private_reveal(make_engine, bus):
    engine = make_engine()
    asyncio.run(_start_game(engine))

    with pytest.raises(PreconditionViolation, match="Set secret card"):
        engine.pick_insider()
    engine.set_secret_card("QD")
    reveal = engine.pick_insider()

    assert (reveal.insider_name, reveal.suit) == ("Cy", "D")
    assert bus.of_type("insider_reveal")[-1].payload == {"insider_name": "Cy", "suit": "D"}
    with pytest.raises(PreconditionViolation, match="already selected"):
        engine.pick_insider()


def test_pick_insider_disabled(make_engine):
    engine = make_engine({"insider_enabled": False})
    asyncio.run(_start_game(engine))
    engine.set_secret_card("QD")
    with pytest.raises(PreconditionViolation, match="disabled"):
        engine.pick_insider()


def test_start_investigation_draws_missing_secret(make_engine, scheduler):
    engine = make_engine()
    asyncio.run(_start_game(engine))

    engine.start_investigation()

    assert engine.phase == "INVESTIGATION"
    assert engine.private.secret_card == "KC"
    assert engine.private.insider_id == _by_name(engine, "Cy").id
    assert engine.round.investigation_ends_at == scheduler.time() + 180
    assert scheduler.pending() == ["investigation"]


def test_resolve_question_rotates_turn_and_grows_vault(make_engine):
    engine = make_engine()
    asyncio.run(_start_game(engine))
    engine.start_investigation()

    with pytest.raises(DataIntegrityViolation):
        engine.resolve_question("Is it red?", "MAYBE")
    with pytest.raises(DataIntegrityViolation):
        engine.resolve_question("  ", "YES")

    for expected_asker in (0, 1, 2, 0):
        entry = engine.resolve_question("Is it red?", "no")
        assert entry.asker_player_id == engine.players[expected_asker].id
        assert entry.answer == "NO"

    assert engine.round.vault_value == 8
    assert engine.round.current_turn_seat_index == 1
    assert engine.last_actions[engine.players[0].id] == "asked Q"


def test_only_current_player_can_call_vault(make_engine):
    engine = make_engine()
    asyncio.run(_start_game(engine))
    engine.start_investigation()

    with pytest.raises(PreconditionViolation, match="current turn"):
        asyncio.run(engine.call_vault(engine.players[1].id))
    assert engine.phase == "INVESTIGATION"


def test_investigation_timeout_calls_vault_automatically(make_engine, scheduler):
    engine = make_engine()

    async def scenario():
        await _start_game(engine)
        engine.start_investigation()
        await scheduler.advance(180)

    asyncio.run(scenario())
    assert engine.phase == "SCORING"
    assert engine.round.called_by == AUTO_CALLER
    assert sorted(scheduler.pending()) == ["poll", "scoring"]


# -----------------------------
# Scoring
# -----------------------------
def test_round_code_format(make_engine, workbook_path):
    engine = make_engine()
    asyncio.run(_to_scoring(engine))

    assert engine.phase == "SCORING"
    assert re.fullmatch(r"R1-[A-Z]+", engine.round.round_code)
    assert engine.round.round_code == "R1-BLAZE"

    sheet = load_workbook(workbook_path)["P01_Ana"]
    assert sheet.cell(row=2, column=6).value == "R1-BLAZE"
    assert sheet.cell(row=2, column=7).value == "OPEN"


def test_full_round_scoring(make_engine, workbook_path):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        assert engine.round.called_by == _by_name(engine, "Cy").id
        ana, ben, cy = engine.players
        await engine.workbook.write_player_inputs(ana.sheet_name, 1, level="SAFE", color="RED")
        await engine.workbook.write_player_inputs(ben.sheet_name, 1, level="MEDIUM", suit="S")
        await engine.workbook.write_player_inputs(cy.sheet_name, 1, level="BOLD", number="Q", suit="D")
        await engine.poll_workbook_once()

    asyncio.run(scenario())

    assert engine.phase == "REVEAL"
    summary = engine.round.latest_result
    assert [(r.player_name, r.points) for r in summary.rows] == [("Ana", 1), ("Ben", -1), ("Cy", 7)]
    assert (summary.team_round_totals.A, summary.team_round_totals.B) == (8, -1)
    assert (engine.team_scores.A, engine.team_scores.B) == (8, -1)
    assert summary.secret_card == "QD"
    assert load_workbook(workbook_path)["P01_Ana"].cell(row=2, column=7).value == "CLOSED"


def test_next_round_never_repeats_dealer_and_ends_game(make_engine):
    engine = make_engine({"rounds": 2})

    async def play_round():
        engine.start_investigation()
        await engine.call_vault(engine.players[engine.round.current_turn_seat_index].id)
        await engine.finalize_scoring("timer")

    async def scenario():
        await _start_game(engine)
        await play_round()
        engine.next_round()
        assert (engine.phase, engine.round.round_number) == ("SETUP", 2)
        assert engine.round.dealer_seat_index == 1
        await play_round()
        engine.next_round()

    asyncio.run(scenario())
    assert engine.phase == "DONE"
    assert len(engine.history) == 2


def test_dealer_rotation_excludes_previous(make_engine):
    engine = make_engine()
    seat_players(engine)

    dealers = []
    for _ in range(4):
        engine._reset_round(1)
        dealers.append(engine.round.dealer_seat_index)

    assert dealers == [2, 1, 2, 1]
    assert all(a != b for a, b in zip(dealers, dealers[1:]))


def test_caller_without_submission_loses_a_point(make_engine):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        return await engine.finalize_scoring("timer")

    summary = asyncio.run(scenario())
    points = {r.player_name: r.points for r in summary.rows}
    assert points == {"Ana": 0, "Ben": 0, "Cy": -1}
    assert not any(r.submitted for r in summary.rows)


def test_finalize_is_idempotent(make_engine):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        first, second = await asyncio.gather(engine.finalize_scoring("timer"), engine.finalize_scoring("all"))
        third = await engine.finalize_scoring("timer")
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first is not None
    assert second is None and third is None
    assert len(engine.history) == 1


def test_scoring_timer_finalizes(make_engine, scheduler):
    engine = make_engine({"scoring_seconds": 10, "poll_interval_ms": 10000})

    async def scenario():
        await _to_scoring(engine)
        await scheduler.advance(10)

    asyncio.run(scenario())
    assert engine.phase == "REVEAL"
    assert engine.bus.of_type("toast")[-1].payload["message"] == "Scoring timer expired. Revealing."
    assert scheduler.pending() == []


def test_mismatched_row_is_ignored(make_engine, workbook_path):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        workbook = load_workbook(workbook_path)
        sheet = workbook["P01_Ana"]
        sheet.cell(row=2, column=6, value="R1-OLD")
        sheet.cell(row=2, column=2, value="RED")
        sheet.cell(row=2, column=5, value="SAFE")
        workbook.save(workbook_path)
        await engine.poll_workbook_once()

    asyncio.run(scenario())
    ana = engine.players[0]
    assert engine.phase == "SCORING"
    assert ana.id not in engine.round.submissions
    assert engine.round.submission_tracker[ana.id].validation_message == ROUND_MISMATCH_MESSAGE


def test_invalid_format_raises_alert(make_engine):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        ben = engine.players[1]
        await engine.workbook.write_player_inputs(ben.sheet_name, 1, level="SAFE", color="GREEN")
        await engine.poll_workbook_once()
        return ben

    ben = asyncio.run(scenario())
    assert ben.id not in engine.round.submissions
    assert engine.round.submission_tracker[ben.id].validation_message == INVALID_FORMAT_MESSAGE
    assert engine.alerts[0].id == f"invalid-{ben.id}-1"
    assert engine.alerts[0].type == "INVALID_SUBMISSION"


def test_acknowledgements_are_written_when_enabled(make_engine, workbook_path):
    engine = make_engine({"ack_writes_enabled": True})

    async def scenario():
        await _to_scoring(engine)
        ana = engine.players[0]
        await engine.workbook.write_player_inputs(ana.sheet_name, 1, level="SAFE", color="RED")
        await engine.poll_workbook_once()

    asyncio.run(scenario())
    sheet = load_workbook(workbook_path)["P01_Ana"]
    assert sheet.cell(row=2, column=9).value == "Accepted"
    assert sheet.cell(row=2, column=8).value
    assert engine.round.submission_tracker[engine.players[0].id].submitted


def test_reset_cancels_every_timer(make_engine, scheduler):
    engine = make_engine()

    async def scenario():
        await _to_scoring(engine)
        engine.reset_to_lobby()
        await scheduler.advance(600)

    asyncio.run(scenario())
    assert engine.phase == "LOBBY"
    assert scheduler.pending() == []
    assert engine.history == []
    assert [p.name for p in engine.players] == ["Ana", "Ben", "Cy"]
    assert engine.workbook_initialized


# -----------------------------
# Démo
# -----------------------------
def test_demo_runs_to_completion(make_engine, scheduler):
    engine = make_engine()

    async def scenario():
        seat_players(engine)
        await engine.initialize_workbook()
        engine.start_demo()
        assert engine.demo.status == "RUNNING"
        assert engine.round.investigation_ends_at == 20
        await scheduler.advance(16)
        assert engine.phase == "SCORING"
        await scheduler.advance(14)

    asyncio.run(scenario())

    summary = engine.history[0]
    assert summary.secret_card == "KC"
    assert len(summary.rows) == 3 and all(r.guess == "KC" for r in summary.rows)
    assert {r.player_name: r.points for r in summary.rows} == {"Ana": 8, "Ben": 9, "Cy": 8}
    assert engine.phase == "DONE"
    assert engine.demo.status == "READY_TO_START"
    assert engine.timings is engine.config


def test_real_game_after_demo(make_engine, scheduler):
    engine = make_engine()

    async def scenario():
        seat_players(engine)
        await engine.initialize_workbook()
        engine.start_demo()
        await scheduler.advance(30)
        await engine.start_real_game_after_demo()

    asyncio.run(scenario())
    assert engine.phase == "SETUP"
    assert engine.demo.status == "IDLE"
    assert engine.history == []
    assert (engine.team_scores.A, engine.team_scores.B) == (0, 0)


def test_real_game_requires_finished_demo(make_engine):
    engine = make_engine()
    with pytest.raises(PreconditionViolation):
        asyncio.run(engine.start_real_game_after_demo())


def test_build_engine_reads_environment(workbook_path):
    from chicken_vault.config.settings import Settings
    from chicken_vault.services.game_engine import build_engine

    with pytest.raises(ConfigurationFailure):
        build_engine(Settings(WORKBOOK_PATH="  "))

    engine = build_engine(Settings(WORKBOOK_PATH=str(workbook_path), ACK_WRITES_ENABLED=True))
    assert engine.config.workbook_path == str(workbook_path)
    assert engine.config.ack_writes_enabled
    assert engine.analyzer is not None
