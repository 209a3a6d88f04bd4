import logging
import socket
import socketserver
import threading
from datetime import datetime
from typing import Optional, Tuple

from ..stats import AddressLogStore, AddressStats, Observation

logger = logging.getLogger("portwarden.collector")


class ProbeCollector:
    """Brief: Apply accepted connections to an AddressStats table and flush it.

    Inputs (constructor):
      - stats: AddressStats table owned by this collector.
      - store: AddressLogStore the table is flushed to.
      - save_interval: Flush after every N accepted connections (>= 1).

    Outputs:
      - ProbeCollector instance shared by the TCP server (accept path) and the
        shutdown path in main().

    Example use:
        >>> store = AddressLogStore("/tmp/ips.log")
        >>> collector = ProbeCollector(store.load(), store, save_interval=10)
        >>> collector.observe("203.0.113.9").hit_count
        1
    """

    def __init__(
        self,
        stats: AddressStats,
        store: AddressLogStore,
        save_interval: int = 10,
    ) -> None:
        self.stats = stats
        self.store = store
        self.save_interval = max(1, int(save_interval))
        self.accepted = 0
        self._flush_due = False
        self._lock = threading.Lock()

    def record(self, address: str, now: Optional[datetime] = None) -> Observation:
        """Brief: Count one connection from *address* without flushing.

        Inputs:
          - address: Peer address string.
          - now: Optional observation time (defaults to local now).

        Outputs:
          - Observation for the updated record. Every save_interval accepts
            marks a flush as due; flush_if_due() performs it.
        """

        obs = self.stats.record_hit(address, now)
        if obs.is_new:
            logger.info("[new] %s first seen at %s", address, obs.last_seen)
        else:
            logger.info(
                "[hit] %s seen at %s (count=%d)", address, obs.last_seen, obs.hit_count
            )

        with self._lock:
            self.accepted += 1
            if self.accepted % self.save_interval == 0:
                self._flush_due = True
        return obs

    def flush_if_due(self) -> bool:
        """Run the periodic flush when one is due; errors are logged, not raised."""
        with self._lock:
            due, self._flush_due = self._flush_due, False
        if not due:
            return False
        try:
            self.flush()
        except OSError as exc:
            logger.error("Periodic flush to %s failed: %s", self.store.path, exc)
        return True

    def observe(self, address: str, now: Optional[datetime] = None) -> Observation:
        """Record one connection and run the periodic flush if it is due."""
        obs = self.record(address, now)
        self.flush_if_due()
        return obs

    def flush(self) -> int:
        """Brief: Write the whole table to the log store.

        Inputs:
          - None.

        Outputs:
          - int number of records written; raises OSError on failure.
        """

        written = self.store.save(self.stats)
        logger.info(
            "Saved %d records to %s (%d connections accepted)",
            written,
            self.store.path,
            self.accepted,
        )
        return written


class ProbeRequestHandler(socketserver.BaseRequestHandler):
    """
    Counts the peer of each accepted connection.
    No data is read or written; the connection is closed by the server as
    soon as handle() returns, before any periodic flush.
    """

    def handle(self) -> None:
        self.server.collector.record(str(self.client_address[0]))


class CollectorTCPServer(socketserver.TCPServer):
    """Single-threaded TCP server carrying an explicit ProbeCollector handle."""

    allow_reuse_address = True

    def __init__(
        self,
        server_address: Tuple[str, int],
        collector: ProbeCollector,
        backlog: int = 5,
    ) -> None:
        self.collector = collector
        self.request_queue_size = max(1, int(backlog))
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, ProbeRequestHandler)

    def process_request(self, request, client_address) -> None:
        # Peer is closed by super(); flush afterwards.
        super().process_request(request, client_address)
        self.collector.flush_if_due()

    def shutdown_request(self, request) -> None:
        try:
            request.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.close_request(request)

    def handle_error(self, request, client_address) -> None:
        logger.exception("Error while handling connection from %s", client_address)


class CollectorServer:
    """A TCP sentinel-port listener wrapper.

    Example use:
        >>> import threading
        >>> server = CollectorServer("127.0.0.1", 12345, collector)
        >>> t = threading.Thread(target=server.serve_forever, daemon=True)
        >>> t.start()
        >>> server.stop()
    """

    def __init__(
        self,
        host: str,
        port: int,
        collector: ProbeCollector,
        backlog: int = 5,
    ) -> None:
        """Bind and listen on (host, port).

        Inputs:
            host: Address to listen on.
            port: TCP port to listen on.
            collector: ProbeCollector receiving every accepted peer.
            backlog: Listen queue size.

        Raises:
            OSError (including PermissionError) when the bind fails; the error
            is logged before it is re-raised.
        """
        self.collector = collector
        try:
            self.server = CollectorTCPServer((host, port), collector, backlog=backlog)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        except OSError as e:
            logger.error("Could not listen on %s:%d: %s", host, port, e)
            raise
        logger.debug("Collector bound to %s:%d", *self.server_address[:2])

    @property
    def server_address(self) -> Tuple[str, int]:
        return self.server.server_address

    def serve_forever(self) -> None:
        """Run the accept loop until stop() is called."""
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            pass

    def stop(self) -> None:
        """Request loop shutdown and close the listening socket.

        Must be called from a thread other than the one running
        serve_forever().
        """
        try:
            self.server.shutdown()
        except Exception:
            logger.exception("Error while shutting down collector server")
        try:
            self.server.server_close()
        except Exception:
            logger.exception("Error while closing collector socket")
