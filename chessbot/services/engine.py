"""Analysis engine client (UCI).

Talks to an external UCI engine binary (Stockfish by default) through an
asyncio subprocess. Only two primitives are consumed: the best move for a
position and its evaluation. No chess rules are implemented here; positions
are passed through as FEN strings.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, runtime_checkable

from chessbot.errors import ChessBotError

logger = logging.getLogger(__name__)

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

# Mate in n is reported as +/-(MATE_SCORE - n) pawns
MATE_SCORE = 1000

_SCORE_CP = re.compile(r"\bscore cp (-?\d+)")
_SCORE_MATE = re.compile(r"\bscore mate (-?\d+)")

# Strength presets: depth, movetime (ms), UCI options
SKILL_LEVELS = {
    1: (5, 100, {"Skill Level": 1, "UCI_LimitStrength": True, "UCI_Elo": 800}),
    3: (8, 300, {"Skill Level": 3, "UCI_LimitStrength": True, "UCI_Elo": 1200}),
    5: (12, 800, {"Skill Level": 5, "UCI_LimitStrength": True, "UCI_Elo": 1600}),
    8: (15, 1500, {"Skill Level": 8, "UCI_LimitStrength": True, "UCI_Elo": 2000}),
    10: (18, 3000, {"Skill Level": 10, "UCI_LimitStrength": False}),
}
DEFAULT_SKILL_LEVEL = 5


class EngineError(ChessBotError):
    """Engine missing, crashed, timed out or returned no move."""


@dataclass(frozen=True)
class EngineMove:
    """A move in UCI notation, e.g. e2e4 or e7e8q."""
    uci: str

    @property
    def from_square(self) -> str:
        return self.uci[:2]

    @property
    def to_square(self) -> str:
        return self.uci[2:4]

    @property
    def promotion(self) -> Optional[str]:
        return self.uci[4] if len(self.uci) > 4 else None


@dataclass(frozen=True)
class EngineAnalysis:
    """
    Parsed engine output.

    Attributes:
        best_move: Best move, None if the engine gave none (e.g. mate on board)
        evaluation: Score in pawns from the side to move
        depth: Deepest search depth reported
    """
    best_move: Optional[EngineMove]
    evaluation: float
    depth: int = 0


def parse_uci_output(lines: Iterable[str]) -> EngineAnalysis:
    """
    Extract best move and evaluation from UCI engine output.

    The last reported score wins. Centipawns become pawns; mate in n becomes
    MATE_SCORE - n (negative n gives -MATE_SCORE - n).
    """
    best_move = None
    evaluation = 0.0
    depth = 0

    for raw in lines:
        line = raw.strip()
        if line.startswith("bestmove"):
            parts = line.split()
            if len(parts) > 1 and parts[1] != "(none)":
                best_move = EngineMove(parts[1])
            continue
        if not line.startswith("info"):
            continue

        cp = _SCORE_CP.search(line)
        if cp:
            evaluation = int(cp.group(1)) / 100
        mate = _SCORE_MATE.search(line)
        if mate:
            mate_in = int(mate.group(1))
            evaluation = float(MATE_SCORE - mate_in if mate_in > 0 else -MATE_SCORE - mate_in)

        tokens = line.split()
        if "depth" in tokens:
            index = tokens.index("depth") + 1
            if index < len(tokens) and tokens[index].isdigit():
                depth = max(depth, int(tokens[index]))

    return EngineAnalysis(best_move=best_move, evaluation=evaluation, depth=depth)


@runtime_checkable
class AnalysisEngine(Protocol):
    """Move/analysis collaborator."""

    async def best_move(self, fen: str) -> EngineMove: ...

    async def evaluate(self, fen: str) -> float: ...


class UciEngine:
    """
    One engine process per request, bounded by a timeout.

    Args:
        path: Engine executable
        depth: Search depth
        movetime_ms: Time limit per search in milliseconds
        timeout: Wall-clock limit for the whole exchange in seconds
        options: UCI options sent with setoption
    """

    def __init__(
        self,
        path: str = "stockfish",
        depth: int = 15,
        movetime_ms: int = 1000,
        timeout: float = 10.0,
        options: Optional[dict] = None,
    ):
        self.path = path
        self.depth = depth
        self.movetime_ms = movetime_ms
        self.timeout = timeout
        self.options = dict(options or {})

    @classmethod
    def for_skill_level(cls, level: int, path: str = "stockfish", timeout: float = 10.0) -> "UciEngine":
        """Engine limited to a preset strength (unknown levels use the default)."""
        depth, movetime_ms, options = SKILL_LEVELS.get(level, SKILL_LEVELS[DEFAULT_SKILL_LEVEL])
        return cls(path, depth=depth, movetime_ms=movetime_ms, timeout=timeout, options=options)

    def _commands(self, fen: str) -> list:
        commands = ["uci"]
        for name, value in self.options.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            commands.append(f"setoption name {name} value {value}")
        commands += [
            "isready",
            f"position fen {fen}",
            f"go depth {self.depth} movetime {self.movetime_ms}",
        ]
        return commands

    async def analyse(self, fen: str = START_FEN) -> EngineAnalysis:
        """
        Run one search.

        Raises:
            EngineError: If the engine cannot be started or does not answer in time
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise EngineError(f"Cannot start engine: {e}", path=self.path) from e

        try:
            proc.stdin.write(("\n".join(self._commands(fen)) + "\n").encode())
            await proc.stdin.drain()
            lines = await asyncio.wait_for(self._read_until_bestmove(proc), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise EngineError("Engine timed out", path=self.path, timeout=self.timeout) from None
        except ConnectionError as e:
            raise EngineError(f"Engine closed the pipe: {e}", path=self.path) from e
        finally:
            await self._shutdown(proc)

        return parse_uci_output(lines)

    @staticmethod
    async def _read_until_bestmove(proc) -> list:
        lines = []
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            lines.append(line)
            if line.startswith("bestmove"):
                break
        return lines

    async def _shutdown(self, proc) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.stdin.write(b"quit\n")
            await proc.stdin.drain()
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        except (asyncio.TimeoutError, ConnectionError):
            logger.debug(f"Engine {self.path} did not quit, killing it")
            proc.kill()
            await proc.wait()

    async def best_move(self, fen: str = START_FEN) -> EngineMove:
        analysis = await self.analyse(fen)
        if analysis.best_move is None:
            raise EngineError("Engine returned no move", fen=fen)
        logger.debug(f"Best move for {fen}: {analysis.best_move.uci} ({analysis.evaluation:+.2f})")
        return analysis.best_move

    async def evaluate(self, fen: str = START_FEN) -> float:
        return (await self.analyse(fen)).evaluation
