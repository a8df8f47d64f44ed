"""
Run configuration shared by every stage of a fit.

A single frozen RunConfig is built once per batch and handed to each
component explicitly, so series can be fitted in separate worker
processes without sharing state.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

ESTIMABLE_PARAMETERS = ("a", "c", "sigma", "p")


@dataclass(frozen=True)
class RunConfig:
    """
    Sampling budgets, cloning ladder and diagnostic thresholds.

    tune   : NUTS adaptation iterations per chain (discarded by PyMC)
    burn   : extra post-adaptation iterations discarded before retention
    draws  : retained iterations per chain, before thinning
    thin   : keep every `thin`-th retained draw
    """

    ladder: Tuple[int, ...] = (1, 5, 10, 20)
    chains: int = 2
    cores: int = 2
    tune: int = 800
    burn: int = 0
    draws: int = 800
    thin: int = 1
    target_accept: float = 0.9
    seed: Optional[int] = 42

    # which parameters are sampled; the rest are held at their starting values
    parameters: Tuple[str, ...] = ("a", "c", "sigma")

    # trajectory summaries
    quantiles: Tuple[float, float, float] = (0.25, 0.5, 0.75)
    hdi_prob: float = 0.95

    # non-identifiability thresholds
    rhat_tolerance: float = 0.1
    contraction_slope: float = -0.5
    require_identifiable: bool = False

    # batch execution
    workers: int = 1
    timeout: Optional[float] = None

    def __post_init__(self):
        ladder = tuple(sorted({int(k) for k in self.ladder}))
        if not ladder:
            raise ValueError("ladder must contain at least one replication level")
        if ladder[0] < 1:
            raise ValueError(f"replication levels must be >= 1, got {ladder}")
        object.__setattr__(self, "ladder", ladder)

        if self.chains < 2:
            raise ValueError("at least two chains are needed for the convergence ratio")
        if self.cores < 1 or self.workers < 1:
            raise ValueError("cores and workers must be >= 1")
        if self.tune < 0 or self.burn < 0:
            raise ValueError("tune and burn must be non-negative")
        if self.draws < 1 or self.thin < 1:
            raise ValueError("draws and thin must be >= 1")
        if not 0 < self.target_accept < 1:
            raise ValueError("target_accept must lie in (0, 1)")

        parameters = tuple(dict.fromkeys(self.parameters))
        unknown = set(parameters) - set(ESTIMABLE_PARAMETERS)
        if unknown:
            raise ValueError(f"Unknown parameters: {sorted(unknown)}")
        if not parameters:
            raise ValueError("at least one parameter must be estimated")
        object.__setattr__(self, "parameters", parameters)

        q = tuple(float(v) for v in self.quantiles)
        if len(q) != 3 or not 0 < q[0] < q[1] < q[2] < 1:
            raise ValueError(f"quantiles must be an increasing triple in (0, 1), got {q}")
        object.__setattr__(self, "quantiles", q)

        if not 0 < self.hdi_prob < 1:
            raise ValueError("hdi_prob must lie in (0, 1)")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @property
    def retained_per_chain(self) -> int:
        return len(range(0, self.draws, self.thin))

    def seed_for(self, k: int) -> Optional[int]:
        """Seed for replication level k; distinct levels never share a stream."""
        if self.seed is None:
            return None
        return self.seed * 1000 + k

    def replace(self, **changes) -> "RunConfig":
        return replace(self, **changes)
