import socketserver
import threading
from typing import Optional, Tuple

from clipstream.config import find_free_port
from clipstream.core.manager import MediaManager
from clipstream.server.api_handler import VideoHandler


class VideoServer(socketserver.ThreadingTCPServer):
    """Thread-per-request server; handlers reach the services through `manager`."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, manager: MediaManager, bind_and_activate: bool = True):
        self.manager = manager
        super().__init__(address, VideoHandler, bind_and_activate=bind_and_activate)


class SweepThread(threading.Thread):
    """Runs the maintenance sweep every `interval` seconds until stopped."""

    def __init__(self, manager: MediaManager, interval: float):
        super().__init__(daemon=True, name="clipstream-sweep")
        self.manager = manager
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.manager.sweep()
            except OSError as e:
                print(f"❌ Maintenance sweep failed: {e}")

    def stop(self):
        self._stop_event.set()


def start_server(manager: MediaManager, port: Optional[int] = None,
                 sweep: bool = True) -> Tuple[VideoServer, int]:
    """
    Initializes and starts the multi-threaded HTTP server in a background thread.
    Port 0 binds an ephemeral port; a taken port falls back to the next free one.
    """
    settings = manager.config.settings
    port = settings.port if port is None else port

    manager.prepare()
    server = VideoServer((settings.host, port), manager, bind_and_activate=False)
    try:
        server.server_bind()
        server.server_activate()
    except OSError as e:
        server.server_close()
        print(f"Error binding to port {port}: {e}")
        new_port = find_free_port(port + 1)
        print(f"Attempting fallback to port {new_port}...")
        server = VideoServer((settings.host, new_port), manager)

    port_actual = server.server_address[1]

    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    if sweep and settings.sweep_interval_minutes > 0:
        server.sweeper = SweepThread(manager, settings.sweep_interval_minutes * 60)
        server.sweeper.start()

    print(f"Server started on port {port_actual}")
    return server, port_actual


def stop_server(server: VideoServer) -> None:
    sweeper = getattr(server, "sweeper", None)
    if sweeper is not None:
        sweeper.stop()
    server.shutdown()
    server.server_close()
