"""
iptables applier - blocks addresses in a dedicated chain.

Each block is a DROP rule at the top of the chain; the chain is jumped to
from INPUT. Expiry is not delegated to the firewall: the block manager's
sweep removes temporary rules.
"""

import shlex
import subprocess
from typing import List, Optional, Tuple

from models import Outcome
from models.detection import Ports
from utils.addresses import ip_version, parse_network
from utils.binaries import IP6TABLES, IPTABLES
from utils.logger import get_logger

from .base import FirewallApplier

logger = get_logger("iptables")


class IptablesApplier(FirewallApplier):
    """
    Wrapper for iptables/ip6tables commands.

    Usage:
        applier = IptablesApplier(chain="BASTION")
        applier.ensure_chain()
        applier.block("203.0.113.7", ports=(22,), duration=3600)
        applier.unblock("203.0.113.7")
    """

    def __init__(self, chain: str = "BASTION", timeout: int = 10,
                 iptables: Optional[str] = IPTABLES, ip6tables: Optional[str] = IP6TABLES):
        """
        Initialize applier.

        Args:
            chain: Chain holding the block rules
            timeout: Command timeout in seconds
            iptables: Path to iptables
            ip6tables: Path to ip6tables
        """
        self.chain = chain
        self.timeout = timeout
        self._binaries = {4: iptables, 6: ip6tables}

    def _run_command(self, version: int, args: List[str]) -> Tuple[bool, str]:
        """
        Run an iptables command with a timeout.

        Returns:
            (success, stdout or error text)
        """
        binary = self._binaries.get(version)
        if not binary:
            return False, f"ip{'6' if version == 6 else ''}tables binary not found"

        full_cmd = [binary, "-w"] + args
        try:
            result = subprocess.run(
                full_cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {self.timeout}s: {' '.join(full_cmd)}")
            return False, "timeout"
        except OSError as e:
            logger.error(f"Command error: {e}")
            return False, str(e)

        if result.returncode == 0:
            return True, result.stdout.strip()
        return False, result.stderr.strip()

    def ensure_chain(self) -> Outcome:
        """Create the chain and the INPUT jump for both families if missing."""
        for version in (4, 6):
            if not self._binaries.get(version):
                continue
            exists, _ = self._run_command(version, ["-n", "-L", self.chain])
            if not exists:
                ok, err = self._run_command(version, ["-N", self.chain])
                if not ok:
                    return Outcome.fatal(f"Cannot create chain {self.chain} (IPv{version}): {err}")
            jumped, _ = self._run_command(version, ["-C", "INPUT", "-j", self.chain])
            if not jumped:
                ok, err = self._run_command(version, ["-I", "INPUT", "1", "-j", self.chain])
                if not ok:
                    return Outcome.fatal(f"Cannot hook chain {self.chain} into INPUT (IPv{version}): {err}")
        return Outcome.success()

    def _rule_specs(self, address: str, ports: Ports) -> List[List[str]]:
        if not ports:
            return [["-s", address, "-j", "DROP"]]
        dports = ",".join(str(p) for p in ports)
        return [
            ["-s", address, "-p", proto, "-m", "multiport", "--dports", dports, "-j", "DROP"]
            for proto in ("tcp", "udp")
        ]

    def block(self, address: str, ports: Ports = None, duration: Optional[int] = None) -> Outcome:
        """Insert DROP rule(s) for address unless already present."""
        if parse_network(address) is None:
            return Outcome.fatal(f"Refusing to block invalid address {address!r}")
        version = ip_version(address)

        for spec in self._rule_specs(address, ports):
            present, _ = self._run_command(version, ["-C", self.chain] + spec)
            if present:
                continue
            ok, err = self._run_command(version, ["-I", self.chain, "1"] + spec)
            if not ok:
                logger.warning(f"Failed to block {address}: {err}")
                return Outcome.recoverable(f"iptables block failed for {address}: {err}")

        logger.debug(f"Blocked {address} in {self.chain} (ports={ports or 'all'}, duration={duration or 'permanent'})")
        return Outcome.success()

    def unblock(self, address: str) -> Outcome:
        """Delete every rule in the chain whose source is address."""
        network = parse_network(address)
        if network is None:
            return Outcome.fatal(f"Refusing to unblock invalid address {address!r}")
        version = network.version

        ok, listing = self._run_command(version, ["-S", self.chain])
        if not ok:
            return Outcome.recoverable(f"Cannot list chain {self.chain}: {listing}")

        for line in listing.splitlines():
            args = shlex.split(line)
            if len(args) < 4 or args[0] != "-A" or "-s" not in args:
                continue
            source = parse_network(args[args.index("-s") + 1])
            if source != network:
                continue
            deleted, err = self._run_command(version, ["-D"] + args[1:])
            if not deleted:
                logger.warning(f"Failed to unblock {address}: {err}")
                return Outcome.recoverable(f"iptables unblock failed for {address}: {err}")

        logger.debug(f"Unblocked {address} in {self.chain}")
        return Outcome.success()
