# gmm_em/_convergence.py
from __future__ import annotations

import logging
import math
import warnings
from typing import List, Optional

from .errors import LikelihoodDecreaseWarning

logger = logging.getLogger(__name__)

# Relative slack before a decrease counts as a real one rather than rounding.
_DECREASE_RTOL = 1e-8


class ConvergenceMonitor:
    """Decides when EM stops, from successive total log-likelihoods.

    Converged when the per-sample absolute change drops below `tol`, or, when
    `rtol > 0`, when the change is at most `rtol * |previous|`. A decrease is
    reported through LikelihoodDecreaseWarning: EM must never decrease the
    log-likelihood, so this points at a numerical problem.
    """

    def __init__(self, tol: float, rtol: float = 0.0, n_samples: int = 1) -> None:
        self.tol = tol
        self.rtol = rtol
        self.n_samples = max(int(n_samples), 1)
        self.history: List[float] = []
        self.n_decreases = 0
        self._previous: Optional[float] = None

    def restart(self) -> None:
        """Forget the previous value, e.g. after the objective changed on purpose."""
        self._previous = None

    def update(self, log_likelihood: float) -> bool:
        """Record one value. Returns True when iteration should stop."""
        self.history.append(log_likelihood)
        previous, self._previous = self._previous, log_likelihood

        if not math.isfinite(log_likelihood):
            # make_params refuses non-finite parameters, so this is only reachable
            # through data far outside the float range
            logger.warning("Non-finite log-likelihood at iteration %d", len(self.history))
            return False
        if previous is None:
            return False

        change = log_likelihood - previous
        logger.debug(
            "iteration %d: log-likelihood %.6f (change %.3e)", len(self.history), log_likelihood, change
        )

        if change < -_DECREASE_RTOL * max(1.0, abs(previous)):
            self.n_decreases += 1
            msg = (
                f"Log-likelihood decreased at iteration {len(self.history)}: "
                f"{previous:.10g} -> {log_likelihood:.10g}"
            )
            logger.warning(msg)
            warnings.warn(msg, LikelihoodDecreaseWarning, stacklevel=3)

        if abs(change) / self.n_samples < self.tol:
            return True
        return self.rtol > 0 and abs(change) <= self.rtol * abs(previous)
