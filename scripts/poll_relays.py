"""Run one poll cycle for every enabled relay. Meant for cron or a UI timer."""
import argparse
import json
import logging

from localman import create_app


def main():
    parser = argparse.ArgumentParser(description="Poll the broker for every enabled relay once")
    parser.add_argument("--project", help="only poll relays of this project")
    args = parser.parse_args()

    app = create_app()
    poller = app.extensions["localman"].poller
    results = poller.poll_all(args.project)
    for result in results:
        logging.getLogger("poll_relays").info("relay %s: %s", result.relay_id, json.dumps(result.to_dict()))
    print(json.dumps([r.to_dict() for r in results], indent=2))


if __name__ == "__main__":
    main()
