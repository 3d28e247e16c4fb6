from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from ob_core.offers import Pair


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def pair_dirname(pair: Pair) -> str:
    """Filesystem-safe `<BASE><QUOTE>` folder name for a pair."""
    cleaned = f"{pair.base.name}{pair.quote.name}"
    for sep in ("/", "-", ":", " "):
        cleaned = cleaned.replace(sep, "")
    return cleaned.upper()


def setup_logging(
    level: str = "INFO",
    component: str = "market",
    pair: Optional[Pair] = None,
    base_dir: str | Path = "logs",
    console: bool = True,
) -> Path:
    """
    Configure root logging:
      - Daily log file in <base_dir>/<component>/<PAIR|default>/YYYY-MM-DD.log (Berlin date)
      - Console (stderr) unless console=False

    Returns:
      Path to the "current" daily log file.
    """
    subdir = pair_dirname(pair) if pair is not None else "default"
    log_dir = Path(base_dir) / component / subdir
    log_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now(ZoneInfo("Europe/Berlin")).strftime("%Y-%m-%d")
    log_path = log_dir / f"{date_str}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    root.addHandler(fh)
    if console:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)
    return log_path
