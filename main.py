import argparse
import logging
import sys
import time


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Local pet SWF cache server")
    parser.add_argument("--cache-dir", help="directory holding <id>.swf files")
    parser.add_argument("--debug", action="store_true", help="log every request")
    args = parser.parse_args(argv)

    from petcache.config import ConfigManager
    from petcache.server import get_cache_server

    config = ConfigManager()
    if args.cache_dir:
        config.config["cache_dir"] = args.cache_dir
    if args.debug:
        config.config["debug_logs"] = True

    level_name = "DEBUG" if args.debug else str(config.get("log_level") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s %(message)s',
    )

    server = get_cache_server(config)
    port = server.wait_for_port(timeout=5.0)
    if port is None:
        logging.getLogger(__name__).error("Server did not start: %s", server.failure)
        return 1

    print(f"Serving {server.store.root} at {server.base_url}/cache/pets/<id>.swf")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
