"""
physics.py -- Force simulation for the bubble canvas.

One call to step() advances every free bubble by one tick:

  1. Sum pairwise forces against every other bubble (held ones included as
     sources).  Beyond touching distance the pull is constant; inside it the
     push is constant, with a much stronger failsafe push when two centres
     coincide.
  2. Damp the sum and clamp each axis to [-max_force, max_force].
  3. Integrate with unit mass and unit timestep: position += force.  No
     velocity is carried between ticks, so bubbles drift together until
     they touch and then hover instead of oscillating.
  4. Reflect at the canvas edges: clamp the position and negate that axis
     of the reported force.

Held bubbles are never moved.  The pairwise pass is O(n^2) per tick, which
is fine for the few dozen bubbles a canvas shows; ticks past max_bubbles
are flagged on the result so the caller can warn.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np

from canvas_model import Bubble, Vec2


@dataclass(frozen=True)
class SimulationConfig:
    bubble_radius: float = 110.0
    attraction_strength: float = 0.02
    repulsion_strength: float = 0.5
    overlap_failsafe_strength: float = 50.0
    overlap_distance: float = 0.1
    jitter: float = 0.01
    damping: float = 0.99
    max_force: float = 30.0
    width: float = 1280.0
    height: float = 800.0
    max_bubbles: int = 200

    @property
    def min_distance(self) -> float:
        return 2.0 * self.bubble_radius


@dataclass(frozen=True)
class TickResult:
    bubbles: tuple[Bubble, ...]
    forces: dict[str, Vec2] = field(default_factory=dict)
    over_limit: bool = False


def pairwise_forces(pos: np.ndarray, cfg: SimulationConfig, rng: np.random.Generator) -> np.ndarray:
    """
    Raw (undamped) force on every row of *pos* from every other row.

    delta[i, j] points from bubble i to bubble j.
    """
    n = pos.shape[0]
    delta = pos[np.newaxis, :, :] - pos[:, np.newaxis, :]
    dist = np.hypot(delta[..., 0], delta[..., 1])
    others = ~np.eye(n, dtype=bool)

    safe = np.where(dist > 0, dist, 1.0)
    unit = delta / safe[..., np.newaxis]

    attract = others & (dist >= cfg.min_distance) & (dist > cfg.overlap_distance)
    repel = others & (dist < cfg.min_distance) & (dist >= cfg.overlap_distance)
    overlap = others & (dist < cfg.overlap_distance)

    force = cfg.attraction_strength * (unit * attract[..., np.newaxis]).sum(axis=1)
    force -= cfg.repulsion_strength * (unit * repel[..., np.newaxis]).sum(axis=1)

    if overlap.any():
        # Coincident centres have no direction; jitter the zero axes.
        jitter = (rng.random(delta.shape) - 0.5) * cfg.jitter
        eff = np.where(delta == 0, jitter, delta)
        eff_dist = np.hypot(eff[..., 0], eff[..., 1])
        eff_dist = np.where(eff_dist > 0, eff_dist, 1.0)
        eff_unit = eff / eff_dist[..., np.newaxis]
        force -= cfg.overlap_failsafe_strength * (eff_unit * overlap[..., np.newaxis]).sum(axis=1)

    return force


def step(
    bubbles: tuple[Bubble, ...],
    cfg: SimulationConfig,
    rng: np.random.Generator | None = None,
) -> TickResult:
    """Advance one tick.  Returns the new bubbles and the per-bubble force used."""
    n = len(bubbles)
    if n == 0:
        return TickResult(bubbles=(), forces={})
    rng = rng if rng is not None else np.random.default_rng()

    pos = np.array([[b.position.x, b.position.y] for b in bubbles], dtype=float)
    held = np.array([b.held for b in bubbles], dtype=bool)

    force = pairwise_forces(pos, cfg, rng)
    force = np.clip(force * cfg.damping, -cfg.max_force, cfg.max_force)
    new_pos = pos + force

    lo = cfg.bubble_radius
    hi = np.array([cfg.width, cfg.height]) - cfg.bubble_radius
    below = new_pos < lo
    above = (new_pos > hi) & ~below
    new_pos = np.where(below, lo, np.where(above, hi, new_pos))
    force = np.where(below | above, -force, force)

    out: list[Bubble] = []
    forces: dict[str, Vec2] = {}
    for i, b in enumerate(bubbles):
        if held[i]:
            out.append(b)
            forces[b.id] = Vec2(0.0, 0.0)
            continue
        out.append(replace(b, position=Vec2(float(new_pos[i, 0]), float(new_pos[i, 1]))))
        forces[b.id] = Vec2(float(force[i, 0]), float(force[i, 1]))
    return TickResult(bubbles=tuple(out), forces=forces, over_limit=n > cfg.max_bubbles)
