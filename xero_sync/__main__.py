from __future__ import annotations

import sys

from xero_sync.bootstrap.exception_handler import handle_global_exception, incident_message
from xero_sync.entrypoints.cli import main


def run() -> int:
    try:
        return main()
    except Exception:  # noqa: BLE001
        exc_type, exc_value, exc_traceback = sys.exc_info()
        if exc_type is None or exc_value is None or exc_traceback is None:
            return 2
        incident_id = handle_global_exception(exc_type, exc_value, exc_traceback)
        sys.stderr.write(incident_message(incident_id) + "\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(run())
