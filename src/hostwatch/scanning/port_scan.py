"""
Port scan of the online hosts with nmap, one host at a time by default.

Cancellation is cooperative: `request_abort` sets a flag that workers read
before taking the next host, so the host being scanned is always finished.
"""
import asyncio
import re
import shutil
from typing import List, Optional, Tuple

import structlog

from ..config import PortScanConfig
from ..discovery.filters import ExclusionFilterChain
from ..exceptions import PortScanAlreadyInProgressError, PortScannerUnavailableError
from ..models.common import HostStatus, utc_now
from ..models.scan import OpenPort, PortScanProgress
from ..storage.repository import BaseInventoryRepository
from ..utils.process import run_command
from ..utils.tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

_OPEN_PORT_LINE = re.compile(r"^\s*(\d+)/(tcp|udp)\s+open\s*(\S*)", re.MULTILINE)


def parse_nmap_output(output: str) -> List[OpenPort]:
    """Open ports listed in nmap's normal output, sorted by port number."""
    ports = {}
    for match in _OPEN_PORT_LINE.finditer(output):
        port, protocol, service = int(match.group(1)), match.group(2), match.group(3) or None
        if 1 <= port <= 65535:
            ports[(port, protocol)] = OpenPort(port=port, protocol=protocol, service=service)
    return [ports[key] for key in sorted(ports)]


class PortScanner:
    """Runs at most one port scan at a time, independently of the sweeps."""

    def __init__(
        self,
        port_config: PortScanConfig,
        repository: BaseInventoryRepository,
        filter_chain: ExclusionFilterChain,
    ):
        self.port_config = port_config
        self.repository = repository
        self.filter_chain = filter_chain
        self.logger = logger.bind(service="PortScanner")
        self._progress = PortScanProgress()
        self._running = False
        self._tasks = BackgroundTasks("PortScanner")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def progress(self) -> PortScanProgress:
        return self._progress.model_copy()

    def request_abort(self) -> bool:
        """Asks the running scan to stop before its next host. False when idle."""
        if not self._running:
            return False
        self._progress.abort_requested = True
        self.logger.info("Port scan abort requested", current_host=self._progress.current_host)
        return True

    def _nmap_binary(self) -> str:
        binary = shutil.which(self.port_config.nmap_path)
        if binary is None:
            raise PortScannerUnavailableError(
                f"Port scanner '{self.port_config.nmap_path}' was not found on PATH",
                binary=self.port_config.nmap_path,
            )
        return binary

    async def _targets(self) -> List[str]:
        online = await self.repository.find_hosts(status=HostStatus.ONLINE)
        online.sort(key=lambda record: record.last_seen, reverse=True)
        kept = [record.ip for record in online if not self.filter_chain.is_excluded(record.ip)]
        return kept[: self.port_config.max_hosts]

    def _claim(self) -> None:
        if self._running:
            raise PortScanAlreadyInProgressError("A port scan is already in progress")
        self._running = True
        self._progress = PortScanProgress(active=True, started_at=utc_now())

    async def _prepare(self) -> Tuple[str, List[str]]:
        self._claim()
        try:
            binary = self._nmap_binary()
            targets = await self._targets()
        except BaseException:
            self._running = False
            self._progress.active = False
            self._progress.finished_at = utc_now()
            raise
        self._progress.total_count = len(targets)
        return binary, targets

    async def start(self) -> PortScanProgress:
        """Starts a port scan in the background and returns its initial progress."""
        binary, targets = await self._prepare()
        self._tasks.spawn(self._execute(binary, targets), name="port-scan")
        return self.progress

    async def run(self) -> PortScanProgress:
        binary, targets = await self._prepare()
        return await self._execute(binary, targets)

    async def _execute(self, binary: str, targets: List[str]) -> PortScanProgress:
        self.logger.info("Port scan started", hosts=len(targets), ports=self.port_config.port_range)
        queue: asyncio.Queue = asyncio.Queue()
        for ip in targets:
            queue.put_nowait(ip)
        try:
            workers = min(self.port_config.concurrency, len(targets))
            await asyncio.gather(*(self._worker(binary, queue) for _ in range(workers)))
        finally:
            self._progress.active = False
            self._progress.current_host = None
            self._progress.aborted = self._progress.abort_requested and self._progress.scanned_count < self._progress.total_count
            self._progress.finished_at = utc_now()
            self._running = False
        self.logger.info(
            "Port scan finished",
            scanned=self._progress.scanned_count,
            total=self._progress.total_count,
            with_open_ports=self._progress.hosts_with_open_ports,
            aborted=self._progress.aborted,
        )
        return self.progress

    async def _worker(self, binary: str, queue: asyncio.Queue) -> None:
        while not self._progress.abort_requested:
            try:
                ip = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._progress.current_host = ip
            ports = await self.scan_host(binary, ip)
            if ports is not None:
                await self._merge(ip, ports)
                if ports:
                    self._progress.hosts_with_open_ports += 1
            self._progress.scanned_count += 1

    async def scan_host(self, binary: str, ip: str) -> Optional[List[OpenPort]]:
        """Open ports of one host, or None when nmap failed for it."""
        args = [binary, "-sT", "-Pn", "-p", self.port_config.port_range, ip]
        try:
            result = await run_command(args, timeout=self.port_config.host_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("Port scan of host timed out", ip=ip, timeout=self.port_config.host_timeout_seconds)
            return None
        except OSError as e:
            self.logger.warning("Port scanner could not be executed", ip=ip, error=str(e))
            return None
        if not result.ok:
            self.logger.warning("Port scanner failed for host", ip=ip, returncode=result.returncode, stderr=result.stderr.strip()[:200])
            return None
        return parse_nmap_output(result.stdout)

    async def _merge(self, ip: str, ports: List[OpenPort]) -> None:
        async with self.repository.host_lock(ip):
            record = await self.repository.get_host(ip)
            if record is None:
                self.logger.debug("Host disappeared during port scan", ip=ip)
                return
            info = dict(record.additional_info)
            info["openPorts"] = [port.model_dump(mode="json") for port in ports]
            info["lastPortScan"] = utc_now().isoformat()
            await self.repository.upsert_host(record.model_copy(update={"additional_info": info}))

    async def close(self) -> None:
        await self._tasks.cancel_all()
