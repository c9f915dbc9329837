"""
Run health file.

Each pipeline run overwrites one small JSON document describing how it
went, for cron wrappers and monitoring to pick up.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from ratehistory.timeutil import now_iso


def write_status(path: Path, **fields: Any):
    """
    Replace `path` with {"ts": <now>, **fields}.

        write_status(settings.health_path, pipeline="scrape", ok=9, total=10,
                     failed={"ics": "timeout"})
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    body = json.dumps({"ts": now_iso(), **fields}, indent=2, default=str)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(body + "\n", encoding="utf-8")
    os.replace(tmp, path)


def summarize(pipeline: str, outcomes: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """Status fields for a per-lender batch; `outcomes` maps lender id -> error or None."""
    failed = {lender: err for lender, err in outcomes.items() if err is not None}
    return {
        "pipeline": pipeline,
        "ok": len(outcomes) - len(failed),
        "total": len(outcomes),
        "failed": failed,
    }
