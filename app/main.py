"""
Command-line entry point for PocketLedger

Schedulers call the batch jobs through this module:

    python app/main.py run-recurring
    python app/main.py refresh-fx
    python app/main.py reconcile

The installed `pocketledger` script runs the same commands.
"""

from pocketledger.cli import main


if __name__ == "__main__":
    main()
