import argparse
import time

from clipstream import __version__
from clipstream.config import config
from clipstream.core.manager import get_media_manager
from clipstream.server.web_server import start_server, stop_server


def main(args_list=None):
    parser = argparse.ArgumentParser(description=f"clipstream {__version__} - video streaming and chunked upload server")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: CLIPSTREAM_PORT or 5001).")
    parser.add_argument("--cleanup", action="store_true", help="Remove abandoned upload sessions and stale temp files, then exit.")
    parser.add_argument("--no-sweep", action="store_true", help="Disable the periodic cleanup of abandoned uploads.")
    args = parser.parse_args(args_list)

    print(f"--- clipstream {__version__} ---")
    print(f"📁 Data directory: {config.data_dir}")

    mgr = get_media_manager()
    mgr.prepare()

    # Startup maintenance
    removed = mgr.sweep()
    if args.cleanup:
        print(f"✅ Cleanup complete. Removed {removed} item(s).")
        return 0

    server, port = start_server(mgr, port=args.port, sweep=not args.no_sweep)
    print(f"🎬 Streaming at http://localhost:{port}/videos")

    # Keep alive
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping server...")
        stop_server(server)
        print("Server stopped. Goodbye!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
