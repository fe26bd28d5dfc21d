"""Semi-global aggregation of the matching-cost volume and disparity selection."""

from enum import Enum

import torch
from torch.profiler import record_function

from .cost import INVALID_COST

# Stand-in for a missing neighbor disparity; far below int32 overflow
_UNREACHABLE = 1 << 24


class ScanDirection(Enum):
    """Direction of a 1-D dynamic-programming scan over the grid."""

    LEFT_TO_RIGHT = "left"
    RIGHT_TO_LEFT = "right"
    TOP_TO_BOTTOM = "top"
    BOTTOM_TO_TOP = "bottom"

    @property
    def horizontal(self) -> bool:
        return self in (ScanDirection.LEFT_TO_RIGHT, ScanDirection.RIGHT_TO_LEFT)

    @property
    def forward(self) -> bool:
        return self in (ScanDirection.LEFT_TO_RIGHT, ScanDirection.TOP_TO_BOTTOM)


def dynamic_step(
    previous: torch.Tensor,
    cost: torch.Tensor,
    lambda_step: int,
    lambda_jump: int,
) -> torch.Tensor:
    """One transition of the accumulated-cost recurrence.

    L[d] = C[d] + min(Lp[d], Lp[d-1] + step, Lp[d+1] + step, min(Lp) + jump)
    - min(Lp). Subtracting the running minimum keeps L within
    [0, 255 + lambda_jump].

    Args:
        previous: Accumulated costs of the preceding cells, shape (M, D), int32.
        cost: Raw costs of the current cells, shape (M, D), int32.
        lambda_step: Penalty of a one-step disparity change.
        lambda_jump: Penalty of any larger disparity change.

    Returns:
        Accumulated costs of the current cells, shape (M, D), int32.
    """
    prev_min = previous.min(dim=-1, keepdim=True).values  # (M, 1)
    pad = torch.full_like(prev_min, _UNREACHABLE)
    lower = torch.cat([pad, previous[:, :-1]], dim=-1)  # Lp[d - 1]
    upper = torch.cat([previous[:, 1:], pad], dim=-1)  # Lp[d + 1]

    best = torch.minimum(previous, torch.minimum(lower, upper) + lambda_step)
    best = torch.minimum(best, prev_min + lambda_jump)
    return cost + best - prev_min


def aggregate_direction(
    cost: torch.Tensor,
    direction: ScanDirection,
    lambda_step: int,
    lambda_jump: int,
    out: torch.Tensor | None = None,
) -> torch.Tensor:
    """Accumulate costs along every scan line of one direction.

    The first cell of a scan line copies its raw cost.

    Args:
        cost: Cost volume, shape (H, W, D), uint8.
        direction: Scan direction.
        lambda_step: Penalty of a one-step disparity change.
        lambda_jump: Penalty of any larger disparity change.
        out: Optional tableau buffer, shape (H, W, D), int32.

    Returns:
        Tableau of accumulated costs, shape (H, W, D), int32.
    """
    if out is None:
        out = torch.empty(cost.shape, dtype=torch.int32, device=cost.device)

    source = cost.to(torch.int32)
    target = out
    if direction.horizontal:
        # Scan along columns: iterate x, each step updates all rows at once
        source = source.transpose(0, 1)
        target = out.transpose(0, 1)

    n = source.shape[0]
    order = range(n) if direction.forward else range(n - 1, -1, -1)
    previous = None
    for i in order:
        if previous is None:
            target[i] = source[i]
        else:
            target[i] = dynamic_step(previous, source[i], lambda_step, lambda_jump)
        previous = target[i]
    return out


def aggregate_costs(
    cost: torch.Tensor,
    lambda_step: int,
    lambda_jump: int,
    tableaus: list[torch.Tensor] | None = None,
    out: torch.Tensor | None = None,
) -> torch.Tensor:
    """Sum the four scan tableaus, counting the raw cost once.

    Args:
        cost: Cost volume, shape (H, W, D), uint8.
        lambda_step: Penalty of a one-step disparity change.
        lambda_jump: Penalty of any larger disparity change.
        tableaus: Optional four int32 buffers of shape (H, W, D), one per
            ScanDirection in declaration order. Rewritten in place.
        out: Optional int32 buffer of shape (H, W, D) receiving the sum.

    Returns:
        Aggregated cost, shape (H, W, D), int32.
    """
    with record_function("aggregate_costs"), torch.no_grad():
        if tableaus is None:
            tableaus = [None] * len(ScanDirection)

        if out is None:
            out = torch.empty(cost.shape, dtype=torch.int32, device=cost.device)

        total = torch.mul(cost.to(torch.int32), -3, out=out)
        for direction, buffer in zip(ScanDirection, tableaus):
            total += aggregate_direction(
                cost, direction, lambda_step, lambda_jump, out=buffer
            )
        return total


def _local_minima(aggregated: torch.Tensor) -> torch.Tensor:
    pad = torch.full_like(aggregated[..., :1], _UNREACHABLE)
    lower = torch.cat([pad, aggregated[..., :-1]], dim=-1)
    upper = torch.cat([aggregated[..., 1:], pad], dim=-1)
    return (aggregated <= lower) & (aggregated <= upper)


def select_disparity(
    aggregated: torch.Tensor,
    cost: torch.Tensor,
    max_bias: int,
    hypotheses: int = 1,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Winner-take-all disparity selection with plausibility checks.

    The first hypothesis is the arg-min of the aggregated cost (first minimum
    on ties). Further hypotheses are the next best local minima, at least two
    steps away from every hypothesis already selected. A hypothesis whose raw
    cost is INVALID_COST or exceeds max_bias is rejected.

    Args:
        aggregated: Aggregated cost, shape (H, W, D), int32.
        cost: Raw cost volume, shape (H, W, D), uint8.
        max_bias: Largest raw cost accepted at a winning disparity.
        hypotheses: Number of hypotheses per cell.

    Returns:
        disparity: Selected steps, shape (H, W, K), int64. 0 where rejected.
        valid: Acceptance mask, shape (H, W, K).
        raw_cost: Raw cost at the selected steps, shape (H, W, K), uint8.
    """
    D = aggregated.shape[-1]
    steps = torch.arange(D, device=aggregated.device)

    selected = [aggregated.argmin(dim=-1)]  # (H, W)
    found = [torch.ones_like(selected[0], dtype=torch.bool)]

    if hypotheses > 1:
        minima = _local_minima(aggregated)
        blocked = torch.zeros_like(minima)
        limit = torch.iinfo(torch.int32).max
        for _ in range(1, hypotheses):
            blocked |= (steps - selected[-1].unsqueeze(-1)).abs() < 2
            masked = torch.where(
                minima & ~blocked, aggregated, torch.full_like(aggregated, limit)
            )
            best = masked.argmin(dim=-1)
            selected.append(best)
            found.append(masked.gather(-1, best.unsqueeze(-1)).squeeze(-1) < limit)

    disparity = torch.stack(selected, dim=-1)  # (H, W, K)
    raw_cost = cost.gather(-1, disparity)
    valid = (
        torch.stack(found, dim=-1)
        & (raw_cost != INVALID_COST)
        & (raw_cost.to(torch.int32) <= max_bias)
    )
    disparity = torch.where(valid, disparity, torch.zeros_like(disparity))
    return disparity, valid, raw_cost
