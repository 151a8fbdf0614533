from __future__ import annotations

import os
import random
from dataclasses import dataclass

import numpy as np

from capacity_engine.simulation import kernel


@dataclass(frozen=True)
class SeedContext:
    seed: int


def set_global_seed(seed: int) -> SeedContext:
    """Set seeds for reproducible forecast runs."""
    os.environ["PYTHONHASHSEED"] = str(seed)
    random.seed(seed)
    np.random.seed(seed)
    kernel.reseed(seed)
    return SeedContext(seed=seed)
