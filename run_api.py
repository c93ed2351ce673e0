"""
API entrypoint for the tablet's local recruitment adapter.

Operator notes:
- Keep this file small; configuration is read from the environment / .env
  by recruitment_engine.config.
- If this file crashes, the error should be immediately obvious to the operator.
"""

import logging
import sys

from recruitment_engine.main import run


def main() -> None:
    try:
        run()
    except Exception:
        logging.basicConfig(level=logging.ERROR)
        logging.exception("Recruitment API failed to start.")
        print("\nRecruitment API failed to start.")
        print("   See error above. Most common causes:")
        print("   - Database path/URL invalid (DATABASE_URL or DB_PATH)")
        print("   - Port already in use (PORT)")
        print("   - BIOMETRIC_DEVICE names an unknown scanner\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
