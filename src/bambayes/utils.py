from __future__ import annotations

import gzip
import json
import logging
import math
import sys
from pathlib import Path
from typing import Any, Iterable, TextIO

import numpy as np

logger = logging.getLogger(__name__)

# Phred Q -> natural-log error probability: ln(e) = Q * LOGFACTOR
LOGFACTOR = math.log(10.0) / -10.0
LN3 = math.log(3.0)

# log of the smallest positive normal double; returned instead of -inf/NaN
LOG_FLOOR = math.log(sys.float_info.min)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def floor_log(x: float) -> float:
    """Clamp a log-probability to ``[LOG_FLOOR, 0]``; NaN maps to the floor."""
    if math.isnan(x):
        return LOG_FLOOR
    return clamp(x, LOG_FLOOR, 0.0)


def phred_to_log_error(q: int) -> float:
    """Natural log of the error probability for Phred quality ``q``."""
    # Guard against negative values (can occur if qualities are missing).
    if q <= 0:
        return 0.0
    return q * LOGFACTOR


def phred_to_log_correct(q: int) -> float:
    """Natural log of ``1 - error`` for Phred quality ``q``, floored."""
    if q <= 0:
        return LOG_FLOOR
    return floor_log(math.log1p(-math.exp(q * LOGFACTOR)))


def log_sum_exp(values: Iterable[float]) -> float:
    arr = np.fromiter(values, dtype=np.float64)
    if arr.size == 0:
        return LOG_FLOOR
    return float(np.logaddexp.reduce(arr))


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)
