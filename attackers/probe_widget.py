"""Drive a widget session against a running challenge service.

Feeds simulated interaction telemetry (human-like curved pointer paths with
jitter and uneven key timings, or scripted straight lines with fixed
intervals) into a WidgetSession and reports where the state machine ends up.

Example:
    python attackers/probe_widget.py --mode human --api-key dev-key
    python attackers/probe_widget.py --mode bot --type pattern --answer "[0,4,8,5,2]"
"""

import argparse
import asyncio
import json
import random
from typing import List, Tuple

from behavior_analysis.telemetry import TelemetryCollector
from widget.renderer import TerminalRenderer
from widget.session import WidgetSession
from widget.transport import HttpTransport


class SimulatedClock:
    """Monotonic clock advanced explicitly by the simulation (seconds)."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


def human_like_path(from_point: Tuple[float, float], to_point: Tuple[float, float],
                    steps: int = 20, jitter: float = 6.0) -> List[Tuple[float, float]]:
    """Quadratic bezier between two points with a random control point and per-step jitter."""
    sx, sy = from_point
    tx, ty = to_point

    # Small control point offset for a subtle curve
    ctrl_x = (sx + tx) / 2 + random.uniform(-jitter * 2, jitter * 2)
    ctrl_y = (sy + ty) / 2 + random.uniform(-jitter * 2, jitter * 2)

    points = []
    for i in range(steps):
        t = i / max(1, steps - 1)
        x = (1 - t) * (1 - t) * sx + 2 * (1 - t) * t * ctrl_x + t * t * tx
        y = (1 - t) * (1 - t) * sy + 2 * (1 - t) * t * ctrl_y + t * t * ty
        points.append((x + random.uniform(-jitter, jitter), y + random.uniform(-jitter, jitter)))
    return points


def straight_path(from_point, to_point, steps: int = 20) -> List[Tuple[float, float]]:
    sx, sy = from_point
    tx, ty = to_point
    return [(sx + (tx - sx) * i / (steps - 1), sy + (ty - sy) * i / (steps - 1)) for i in range(steps)]


def simulate_human(collector: TelemetryCollector, clock: SimulatedClock, moves: int = 12) -> None:
    position = (random.uniform(0, 800), random.uniform(0, 600))
    for _ in range(moves):
        target = (random.uniform(0, 800), random.uniform(0, 600))
        for x, y in human_like_path(position, target):
            clock.advance_ms(random.uniform(8, 40))
            collector.on_mouse_move(x, y)
        position = target
        if random.random() < 0.4:
            clock.advance_ms(random.uniform(80, 400))
            collector.on_click(*position)
        if random.random() < 0.2:
            collector.on_scroll()
    for _ in range(12):
        clock.advance_ms(random.uniform(60, 350))
        collector.on_key_down()


def simulate_bot(collector: TelemetryCollector, clock: SimulatedClock, moves: int = 12) -> None:
    position = (0.0, 0.0)
    for i in range(moves):
        target = (50.0 * (i + 1), 30.0 * (i + 1))
        for x, y in straight_path(position, target):
            clock.advance_ms(10)
            collector.on_mouse_move(x, y)
        position = target
        clock.advance_ms(100)
        collector.on_click(*position)
    for _ in range(12):
        clock.advance_ms(100)
        collector.on_key_down()


async def probe(args) -> int:
    clock = SimulatedClock()
    collector = TelemetryCollector(clock=clock)
    session = WidgetSession(transport=HttpTransport(args.url), collector=collector)
    session.init(args.api_key, challenge_type=args.type, difficulty=args.difficulty)

    (simulate_human if args.mode == "human" else simulate_bot)(collector, clock)
    print(f" > Client risk score: {session.get_risk_score():.3f}")

    outcome = {}
    state = await session.verify(TerminalRenderer(),
                                 on_success=lambda token: outcome.setdefault("token", token),
                                 on_failure=lambda error: outcome.setdefault("error", error))
    print(f" > State after verify(): {state.value}")

    if session.challenge is not None and "token" not in outcome:
        if args.type == "pattern" and args.reveal:
            await session.show_pattern()
            await asyncio.sleep(5)
        if args.answer is not None:
            answer = json.loads(args.answer)
        elif session.challenge.type == "text":
            answer = session.challenge.data.get("text")
        else:
            answer = None
        if answer is not None:
            await session.submit(answer)

    await asyncio.sleep(0)
    print(f" > Final state: {session.state.value}")
    if "token" in outcome:
        print(f" > Token: {outcome['token'][:32]}...")
        return 0
    print(f" > Not verified: {outcome.get('error', 'no answer submitted')}")
    return 1


def main():
    parser = argparse.ArgumentParser(description="Probe the CAPTCHA widget flow against a running server")
    parser.add_argument("--url", default="http://localhost:8000", help="Challenge service base URL")
    parser.add_argument("--api-key", default="dev-key")
    parser.add_argument("--mode", choices=("human", "bot"), default="human")
    parser.add_argument("--type", default="text", help="text, image_selection, pattern, semantic")
    parser.add_argument("--difficulty", default="medium")
    parser.add_argument("--answer", default=None, help="JSON answer to submit, e.g. '[0,2]' or '1'")
    parser.add_argument("--reveal", action="store_true", help="Play the pattern back before answering")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)
    raise SystemExit(asyncio.run(probe(args)))


if __name__ == "__main__":
    main()
