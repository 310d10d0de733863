"""End-to-end tournament flows against an in-memory database."""

import asyncio
from datetime import timedelta
from itertools import combinations

import pytest

from chessbot.errors import (
    InsufficientParticipantsError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    TournamentFullError,
)
from chessbot.services.tournament_settings import TournamentSettings
from chessbot.services.tournaments import RoundProgress
from chessbot.utils import utc_now


async def setup_tournament(orchestrator, players, start=True, **options):
    options.setdefault("max_participants", len(players))
    tournament = await orchestrator.create_tournament("Test Cup", TournamentSettings(**options))
    for player in players:
        tournament = await orchestrator.join_tournament(tournament.id, player.id)
    if start and tournament.status == "upcoming":
        tournament = await orchestrator.start_tournament(tournament.id)
    return tournament


async def play_out(orchestrator, storage, tournament_id, outcome="player1_wins", max_rounds=20):
    """Record ``outcome`` for every open game until the tournament stops being active."""
    for _ in range(max_rounds):
        tournament = await storage.get_tournament(tournament_id)
        if tournament.status != "active":
            return tournament
        for match in await storage.list_incomplete_matches(tournament_id):
            await orchestrator.record_match_outcome(match.id, outcome)
    raise AssertionError("tournament did not finish")


def games(matches):
    return [m for m in matches if not m.is_bye]


# ============================================================================
# Single elimination
# ============================================================================

@pytest.mark.asyncio
async def test_four_player_knockout(orchestrator, storage, notifier, make_competitors):
    players = await make_competitors(4)
    tournament = await orchestrator.create_tournament(
        "Friday Blitz", TournamentSettings(max_participants=4, auto_start=True)
    )
    for player in players:
        tournament = await orchestrator.join_tournament(tournament.id, player.id)

    assert tournament.status == "active"
    assert tournament.current_round == 1
    first_round = await storage.list_matches(tournament.id)
    assert len(first_round) == 2

    reports = [await orchestrator.record_match_outcome(m.id, "player1_wins") for m in first_round]
    assert [r.rating_change.delta_a for r in reports] == [20, 20]
    assert [r.rating_change.delta_b for r in reports] == [-20, -20]

    tournament = await storage.get_tournament(tournament.id)
    assert tournament.current_round == 2
    [final] = await storage.list_incomplete_matches(tournament.id)
    assert {final.player1_id, final.player2_id} == {m.player1_id for m in first_round}

    await orchestrator.record_match_outcome(final.id, "player2_wins")

    tournament = await storage.get_tournament(tournament.id)
    assert tournament.status == "completed"
    assert tournament.winner_id == final.player2_id
    assert tournament.id not in orchestrator._locks
    assert tournament.end_time is not None

    ranks = {p.competitor_id: p.final_rank for p in await storage.list_participants(tournament.id)}
    assert ranks[final.player2_id] == 1
    assert ranks[final.player1_id] == 2
    assert sorted(ranks.values()) == [1, 2, 3, 4]

    assert len(notifier.of_type("tournament_start")) == 1
    assert len(notifier.of_type("round_start")) == 2
    assert len(notifier.of_type("match_result")) == 3
    assert len(notifier.of_type("tournament_complete")) == 1
    assert len(notifier.broadcasts) == 2


@pytest.mark.asyncio
async def test_draw_replays_in_single_elimination(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    tournament = await setup_tournament(orchestrator, players)

    [match] = await storage.list_matches(tournament.id)
    report = await orchestrator.record_match_outcome(match.id, "draw")
    assert report.eliminated == []

    tournament = await storage.get_tournament(tournament.id)
    assert tournament.status == "active"
    assert tournament.current_round == 2
    [replay] = await storage.list_incomplete_matches(tournament.id)
    assert {replay.player1_id, replay.player2_id} == {p.id for p in players}


@pytest.mark.asyncio
async def test_odd_field_gets_a_bye(orchestrator, storage, make_competitors):
    players = await make_competitors(3)
    tournament = await setup_tournament(orchestrator, players)

    matches = await storage.list_matches(tournament.id)
    [bye] = [m for m in matches if m.is_bye]
    assert bye.player2_id is None
    assert bye.is_complete and not bye.is_rated

    with pytest.raises(InvalidStateError):
        await orchestrator.record_match_outcome(bye.id, "player1_wins")

    tournament = await play_out(orchestrator, storage, tournament.id)
    assert tournament.status == "completed"


# ============================================================================
# Other formats
# ============================================================================

@pytest.mark.asyncio
async def test_double_elimination_needs_two_losses(orchestrator, storage, make_competitors):
    players = await make_competitors(4)
    tournament = await setup_tournament(orchestrator, players, format="double_elimination")

    tournament = await play_out(orchestrator, storage, tournament.id)
    assert tournament.status == "completed"

    standings = await orchestrator.get_standings(tournament.id)
    assert standings[0].competitor_id == tournament.winner_id
    assert not standings[0].eliminated
    for standing in standings[1:]:
        assert standing.eliminated
        assert standing.losses == 2


@pytest.mark.asyncio
async def test_swiss_avoids_rematches(orchestrator, storage, make_competitors):
    players = await make_competitors(4)
    tournament = await setup_tournament(orchestrator, players, format="swiss")

    tournament = await play_out(orchestrator, storage, tournament.id)
    assert tournament.status == "completed"
    assert tournament.current_round == 2

    pairs = [frozenset((m.player1_id, m.player2_id)) for m in games(await storage.list_matches(tournament.id))]
    assert len(pairs) == 4
    assert len(set(pairs)) == 4


@pytest.mark.asyncio
async def test_swiss_rotates_the_bye(orchestrator, storage, make_competitors):
    players = await make_competitors(3)
    tournament = await setup_tournament(orchestrator, players, format="swiss")

    tournament = await play_out(orchestrator, storage, tournament.id)
    byes = [m for m in await storage.list_matches(tournament.id) if m.is_bye]
    assert len(byes) == 2
    assert len({m.player1_id for m in byes}) == 2

    standings = await orchestrator.get_standings(tournament.id)
    assert sum(s.score for s in standings) == 4


@pytest.mark.asyncio
async def test_round_robin_plays_every_pair(orchestrator, storage, make_competitors):
    players = await make_competitors(3)
    tournament = await setup_tournament(orchestrator, players, format="round_robin")

    matches = await storage.list_matches(tournament.id)
    pairs = {frozenset((m.player1_id, m.player2_id)) for m in matches}
    assert pairs == {frozenset(pair) for pair in combinations([p.id for p in players], 2)}

    tournament = await play_out(orchestrator, storage, tournament.id)
    assert tournament.status == "completed"
    standings = await orchestrator.get_standings(tournament.id)
    assert standings[0].competitor_id == tournament.winner_id
    assert [s.final_rank for s in standings] == [1, 2, 3]


# ============================================================================
# Registration
# ============================================================================

@pytest.mark.asyncio
async def test_concurrent_joins_never_exceed_capacity(orchestrator, storage, make_competitors):
    players = await make_competitors(6)
    tournament = await orchestrator.create_tournament("Rush", TournamentSettings(max_participants=4))

    results = await asyncio.gather(
        *(orchestrator.join_tournament(tournament.id, p.id) for p in players),
        return_exceptions=True,
    )

    assert sum(isinstance(r, TournamentFullError) for r in results) == 2
    tournament = await storage.get_tournament(tournament.id)
    assert tournament.current_participants == 4
    assert len(await storage.list_participants(tournament.id)) == 4


@pytest.mark.asyncio
async def test_registration_errors(orchestrator, make_competitors):
    players = await make_competitors(3)
    tournament = await orchestrator.create_tournament("Cup", TournamentSettings(max_participants=2))
    await orchestrator.join_tournament(tournament.id, players[0].id)

    with pytest.raises(InvalidStateError):
        await orchestrator.join_tournament(tournament.id, players[0].id)
    with pytest.raises(NotFoundError):
        await orchestrator.join_tournament(tournament.id, 9999)
    with pytest.raises(NotFoundError):
        await orchestrator.join_tournament(9999, players[0].id)
    with pytest.raises(InsufficientParticipantsError):
        await orchestrator.start_tournament(tournament.id)

    await orchestrator.join_tournament(tournament.id, players[1].id)
    with pytest.raises(TournamentFullError):
        await orchestrator.join_tournament(tournament.id, players[2].id)

    await orchestrator.start_tournament(tournament.id)
    with pytest.raises(InvalidStateError):
        await orchestrator.join_tournament(tournament.id, players[2].id)
    with pytest.raises(InvalidStateError):
        await orchestrator.start_tournament(tournament.id)
    with pytest.raises(InvalidStateError):
        await orchestrator.leave_tournament(tournament.id, players[0].id)


@pytest.mark.asyncio
async def test_leave_tournament(orchestrator, make_competitors):
    players = await make_competitors(2)
    tournament = await orchestrator.create_tournament("Cup", TournamentSettings(max_participants=4))
    await orchestrator.join_tournament(tournament.id, players[0].id)

    tournament = await orchestrator.leave_tournament(tournament.id, players[0].id)
    assert tournament.current_participants == 0
    with pytest.raises(NotFoundError):
        await orchestrator.leave_tournament(tournament.id, players[1].id)


@pytest.mark.asyncio
async def test_create_rejects_bad_input(orchestrator):
    with pytest.raises(InvalidArgumentError):
        await orchestrator.create_tournament("  ")
    with pytest.raises(InvalidArgumentError):
        await orchestrator.create_tournament("Cup", {"max_participants": 1})
    with pytest.raises(InvalidArgumentError):
        await orchestrator.create_tournament("Cup", {"prize": "trophy"})


# ============================================================================
# Results
# ============================================================================

@pytest.mark.asyncio
async def test_result_cannot_be_recorded_twice(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    tournament = await setup_tournament(orchestrator, players, auto_advance=False)
    [match] = await storage.list_matches(tournament.id)

    results = await asyncio.gather(
        orchestrator.record_match_outcome(match.id, "player1_wins"),
        orchestrator.record_match_outcome(match.id, "player2_wins"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    stored = await storage.get_match(match.id)
    assert stored.outcome == "player1_wins"
    winner = await storage.get_competitor(match.player1_id)
    assert winner.games_played == 1


@pytest.mark.asyncio
async def test_unknown_outcome_rejected(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    tournament = await setup_tournament(orchestrator, players)
    [match] = await storage.list_matches(tournament.id)

    with pytest.raises(InvalidArgumentError):
        await orchestrator.record_match_outcome(match.id, "abandoned")
    with pytest.raises(NotFoundError):
        await orchestrator.record_match_outcome(9999, "draw")


@pytest.mark.asyncio
async def test_unrated_tournament_keeps_ratings(orchestrator, storage, make_competitors):
    players = await make_competitors(2, rating=1500)
    tournament = await setup_tournament(orchestrator, players, is_rated=False)

    tournament = await play_out(orchestrator, storage, tournament.id)
    assert tournament.status == "completed"
    for player in players:
        competitor = await storage.get_competitor(player.id)
        assert competitor.rating == 1500
        assert competitor.games_played == 0


@pytest.mark.asyncio
async def test_casual_match_updates_ratings(orchestrator, storage, make_competitors):
    strong, weak = await make_competitors(2, games_played=40)
    await storage.update_competitor(strong.id, rating=1400)

    match = await orchestrator.create_casual_match(strong.id, weak.id)
    report = await orchestrator.record_match_outcome(match.id, "player2_wins")

    assert report.rating_change.delta_b > 16
    assert report.rating_change.delta_a == -report.rating_change.delta_b
    weak = await storage.get_competitor(weak.id)
    assert weak.rating == 1200 + report.rating_change.delta_b
    assert weak.games_won == 1

    with pytest.raises(InvalidArgumentError):
        await orchestrator.create_casual_match(strong.id, strong.id)


@pytest.mark.asyncio
async def test_manual_advance(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    tournament = await setup_tournament(orchestrator, players, auto_advance=False)
    [match] = await storage.list_matches(tournament.id)

    assert await orchestrator.check_round_completion(tournament.id) == RoundProgress.PENDING
    await orchestrator.record_match_outcome(match.id, "player1_wins")
    assert (await storage.get_tournament(tournament.id)).status == "active"

    assert await orchestrator.check_round_completion(tournament.id) == RoundProgress.COMPLETED
    assert await orchestrator.check_round_completion(tournament.id) == RoundProgress.INACTIVE
    assert (await storage.get_tournament(tournament.id)).winner_id == match.player1_id


# ============================================================================
# Completion and cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_complete_with_explicit_winner(orchestrator, storage, make_competitors):
    players = await make_competitors(4)
    outsider, = await make_competitors(1)
    tournament = await setup_tournament(orchestrator, players)

    with pytest.raises(InvalidStateError):
        await orchestrator.complete_tournament(tournament.id, outsider.id)

    completed = await orchestrator.complete_tournament(tournament.id, players[3].id)
    assert completed.winner_id == players[3].id
    standings = await orchestrator.get_standings(tournament.id)
    assert standings[0].competitor_id == players[3].id
    assert [s.rank for s in standings] == [1, 2, 3, 4]
    assert [s.final_rank for s in standings] == [1, 2, 3, 4]

    # later games elsewhere move ratings but not the finished ranking
    match = await orchestrator.create_casual_match(players[2].id, players[0].id)
    await orchestrator.record_match_outcome(match.id, "player1_wins")
    again = await orchestrator.get_standings(tournament.id)
    assert [s.competitor_id for s in again] == [s.competitor_id for s in standings]

    with pytest.raises(InvalidStateError):
        await orchestrator.complete_tournament(tournament.id)


@pytest.mark.asyncio
async def test_cancel_active_tournament(orchestrator, storage, notifier, make_competitors):
    players = await make_competitors(2)
    tournament = await setup_tournament(orchestrator, players)
    [match] = await storage.list_matches(tournament.id)

    cancelled = await orchestrator.cancel_tournament(tournament.id, "Server maintenance")
    assert cancelled.status == "cancelled"
    assert tournament.id not in orchestrator._locks
    [message] = notifier.of_type("tournament_cancelled")
    assert sorted(message["competitor_ids"]) == sorted(p.id for p in players)
    assert "Server maintenance" in message["body"]

    with pytest.raises(InvalidStateError):
        await orchestrator.record_match_outcome(match.id, "player1_wins")
    with pytest.raises(InvalidStateError):
        await orchestrator.cancel_tournament(tournament.id)
    assert (await storage.get_match(match.id)).is_complete is False


@pytest.mark.asyncio
async def test_start_due_tournaments(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    start_time = utc_now() - timedelta(minutes=1)
    settings = TournamentSettings(max_participants=4, auto_start=True)

    ready = await orchestrator.create_tournament("Ready", settings, start_time=start_time)
    empty = await orchestrator.create_tournament("Empty", settings, start_time=start_time)
    assert ready.status == "upcoming"
    for player in players:
        await orchestrator.join_tournament(ready.id, player.id)

    window = timedelta(minutes=30)
    assert await orchestrator.start_due_tournaments(start_time + timedelta(minutes=5), window) == [ready.id]
    assert (await storage.get_tournament(ready.id)).status == "active"
    assert (await storage.get_tournament(empty.id)).status == "upcoming"

    assert await orchestrator.start_due_tournaments(start_time + window, window) == []
    assert (await storage.get_tournament(empty.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_future_tournament_is_not_started(orchestrator, storage, make_competitors):
    players = await make_competitors(2)
    later = await orchestrator.create_tournament(
        "Later",
        TournamentSettings(max_participants=4, auto_start=True),
        start_time=utc_now() + timedelta(hours=1),
    )
    for player in players:
        await orchestrator.join_tournament(later.id, player.id)

    assert await orchestrator.start_due_tournaments() == []
    assert (await storage.get_tournament(later.id)).status == "upcoming"


# ============================================================================
# Competitors
# ============================================================================

@pytest.mark.asyncio
async def test_register_and_leaderboard(orchestrator):
    alice = await orchestrator.register_competitor("alice", telegram_id=1, rating=1600)
    again = await orchestrator.register_competitor("alice2", telegram_id=1)
    assert again.id == alice.id

    bob = await orchestrator.register_competitor("bob", nickname="Bobby")
    assert bob.rating == 1200
    assert bob.display_name == "Bobby"

    capped = await orchestrator.register_competitor("magnus", rating=5000)
    assert capped.rating == 3000

    with pytest.raises(InvalidArgumentError):
        await orchestrator.register_competitor("   ")

    assert [c.id for c in await orchestrator.leaderboard(2)] == [capped.id, alice.id]


@pytest.mark.asyncio
async def test_preview_rating_change(orchestrator, make_competitors):
    a, b = await make_competitors(2)
    assert await orchestrator.preview_rating_change(a.id, b.id, "win") == 20
    assert await orchestrator.preview_rating_change(a.id, b.id, "loss") == -20
    assert await orchestrator.preview_rating_change(a.id, b.id, "draw") == 0
