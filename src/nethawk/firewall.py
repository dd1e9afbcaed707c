"""
================================================================================
NetHawk - Firewall Manager
================================================================================

Host firewall collaborator used by the block controller.

Both operations are idempotent: ``apply`` checks for an existing DROP rule
before inserting one and ``revoke`` succeeds when no rule is present. A
failure raises FirewallApplyError; retries are the block controller's job.

Modes:
    enabled=False   rules are tracked by the controller only, nothing runs
    dry_run=True    iptables commands are logged, not executed
    dry_run=False   iptables commands are executed (requires root)

================================================================================
"""

import ipaddress
import subprocess
from typing import List

from .errors import FirewallApplyError
from .utils import get_logger

logger = get_logger(__name__)


class FirewallManager:
    """Manages iptables DROP rules for blocked source addresses."""

    def __init__(self, enabled: bool = False, dry_run: bool = True,
                 chain: str = 'INPUT', iptables: str = 'iptables',
                 timeout: float = 10.0):
        """
        Args:
            enabled: Whether firewall rules are managed at all
            dry_run: If True, only log what would be done
            chain: iptables chain to use (INPUT, FORWARD)
            iptables: iptables binary
            timeout: Seconds before an iptables call is abandoned
        """
        self.enabled = enabled
        self.dry_run = dry_run
        self.chain = chain
        self.iptables = iptables
        self.timeout = timeout

    def _rule(self, address: str) -> List[str]:
        return [self.chain, '-s', address, '-j', 'DROP']

    def _binary_for(self, address: str) -> str:
        if ipaddress.ip_address(address).version == 6 and self.iptables == 'iptables':
            return 'ip6tables'
        return self.iptables

    def _run(self, address: str, action: str, args: List[str]) -> subprocess.CompletedProcess:
        cmd = [self._binary_for(address)] + args
        try:
            return subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise FirewallApplyError(address, action, cause=e)

    def _rule_exists(self, address: str, action: str) -> bool:
        result = self._run(address, action, ['-C'] + self._rule(address))
        return result.returncode == 0

    def _validate(self, address: str, action: str) -> None:
        try:
            ipaddress.ip_address(address)
        except ValueError as e:
            raise FirewallApplyError(address, action, cause=e)

    def apply(self, address: str, reason: str = 'attack_detected') -> None:
        """
        Deny traffic from ``address``.

        Raises:
            FirewallApplyError: if the rule could not be installed
        """
        self._validate(address, 'apply')
        if not self.enabled:
            return

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would block IP: {address} (reason: {reason})")
            return

        if self._rule_exists(address, 'apply'):
            return

        result = self._run(address, 'apply', ['-I'] + self._rule(address))
        if result.returncode != 0:
            raise FirewallApplyError(
                address, 'apply', cause=RuntimeError(result.stderr.decode(errors='replace').strip())
            )
        logger.info(f"Blocked IP: {address} (reason: {reason})")

    def revoke(self, address: str) -> None:
        """
        Remove the deny rule for ``address``.

        Raises:
            FirewallApplyError: if an existing rule could not be removed
        """
        self._validate(address, 'revoke')
        if not self.enabled:
            return

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would unblock IP: {address}")
            return

        # Rules may have been inserted more than once by hand
        while self._rule_exists(address, 'revoke'):
            result = self._run(address, 'revoke', ['-D'] + self._rule(address))
            if result.returncode != 0:
                raise FirewallApplyError(
                    address, 'revoke', cause=RuntimeError(result.stderr.decode(errors='replace').strip())
                )
        logger.info(f"Unblocked IP: {address}")

    def describe(self) -> str:
        if not self.enabled:
            return 'disabled'
        return f"{'dry-run' if self.dry_run else 'active'} ({self.chain})"
