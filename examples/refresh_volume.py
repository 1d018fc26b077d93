"""Refresh and summarize a wallet's inflow volume.

This script drives the inflowcli CLI: it brings the cache up to date, then
prints the monthly series.
"""

import json
import subprocess
import sys


def run(*args):
    result = subprocess.run(["inflowcli", *args, "--format", "json"], capture_output=True, text=True)
    if result.returncode != 0:
        print(f"Error ({result.returncode}): {result.stderr}")
        sys.exit(result.returncode)
    return json.loads(result.stdout)


def main():
    """Refresh the current year, then show monthly inflow."""
    year = sys.argv[1] if len(sys.argv) > 1 else None
    extra = ["--year", year] if year else []

    print("Refreshing inflow volume...")
    refreshed = run("refresh", *extra)
    stats = refreshed["stats"]
    print(f"Blocks {stats['fromBlock']}-{stats['toBlock']}: {stats['newTransactions']} new transaction(s)")
    for lo, hi in stats["failedRanges"]:
        print(f"  ! blocks {lo}-{hi} failed; they will be retried on the next refresh")

    volume = run("volume", "--period", "monthly", *extra)
    print(f"\nMonthly inflow (updated {volume['lastUpdated']}):")
    for bucket in volume["data"]:
        if bucket["volume"] is None:
            print(f"  {bucket['date']}  —")
        else:
            print(f"  {bucket['date']}  ${bucket['volume']:,.2f}")


if __name__ == "__main__":
    main()
