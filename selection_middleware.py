import csv
import logging
import os
import random
import re
from typing import Dict, List, Optional

from input_middleware import ConfigError

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def selection_filename(cdn: str) -> str:
    return f"{_UNSAFE.sub('_', cdn)}_domain_selection.txt"


def _group_rows(attribution_path: str) -> Dict[str, List[List[str]]]:
    if not os.path.isfile(attribution_path):
        raise ConfigError(f"attribution table not found: {attribution_path}")
    groups: Dict[str, List[List[str]]] = {}
    with open(attribution_path, "r", encoding="utf-8", newline="") as fh:
        reader = csv.reader(fh)
        for row in reader:
            if not row or row[0] == "cdn":
                continue
            groups.setdefault(row[0], []).append(row)
    return groups


def select_domains(cdn_names: List[str], attribution_path: str, out_dir: str,
                   count: int = 100, seed: Optional[int] = None) -> Dict[str, int]:
    """
    Write up to ``count`` randomly chosen attribution rows per CDN to
    ``<out_dir>/<cdn>_domain_selection.txt``. CDNs without rows get no file.
    """
    if count < 1:
        raise ConfigError("count must be >= 1")
    groups = _group_rows(attribution_path)
    os.makedirs(out_dir, exist_ok=True)
    rng = random.Random(seed)

    written: Dict[str, int] = {}
    for cdn in cdn_names:
        rows = groups.get(cdn) or []
        if not rows:
            log.warning("no domains found for '%s'", cdn)
            written[cdn] = 0
            continue
        picked = rng.sample(rows, min(count, len(rows)))
        path = os.path.join(out_dir, selection_filename(cdn))
        with open(path, "w", encoding="utf-8", newline="") as fh:
            csv.writer(fh, lineterminator="\n").writerows(picked)
        written[cdn] = len(picked)
        log.info("Processed %d domains for %s into %s", len(picked), cdn, path)
    return written
