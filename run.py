from __future__ import annotations

import signal
import threading

from salonsched import create_app
from salonsched.jobs import SweepScheduler


def main() -> None:
    flask_app = create_app()
    scheduler = SweepScheduler(flask_app)
    scheduler.start()

    # show which sweeps are actually scheduled
    print("\n=== SWEEPS ===")
    for job in scheduler.scheduler.get_jobs():
        print(f"{job.id}: {job.trigger}")
    print("==============\n")

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    main()
