import subprocess

import pytest

from nethawk.errors import FirewallApplyError
from nethawk.firewall import FirewallManager


class FakeIptables:
    """Stands in for subprocess.run; keeps DROP rules in a list."""

    def __init__(self, fail_on=None):
        self.rules = []
        self.commands = []
        self.fail_on = fail_on

    def __call__(self, cmd, capture_output=True, timeout=None):
        self.commands.append(cmd)
        binary, option, rule = cmd[0], cmd[1], tuple(cmd[2:])
        if option == self.fail_on:
            return subprocess.CompletedProcess(cmd, 1, b'', b'permission denied')
        if option == '-C':
            return subprocess.CompletedProcess(cmd, 0 if rule in self.rules else 1, b'', b'')
        if option == '-I':
            self.rules.append(rule)
        elif option == '-D':
            self.rules.remove(rule)
        return subprocess.CompletedProcess(cmd, 0, b'', b'')


@pytest.fixture
def iptables(monkeypatch):
    fake = FakeIptables()
    monkeypatch.setattr(subprocess, 'run', fake)
    return fake


def test_disabled_runs_nothing(iptables):
    firewall = FirewallManager(enabled=False)
    firewall.apply('203.0.113.7')
    firewall.revoke('203.0.113.7')
    assert iptables.commands == []
    assert firewall.describe() == 'disabled'


def test_dry_run_runs_nothing(iptables):
    firewall = FirewallManager(enabled=True, dry_run=True)
    firewall.apply('203.0.113.7')
    assert iptables.commands == []
    assert firewall.describe() == 'dry-run (INPUT)'


def test_apply_and_revoke(iptables):
    firewall = FirewallManager(enabled=True, dry_run=False)

    firewall.apply('203.0.113.7')
    assert iptables.rules == [('INPUT', '-s', '203.0.113.7', '-j', 'DROP')]

    firewall.revoke('203.0.113.7')
    assert iptables.rules == []


def test_apply_is_idempotent(iptables):
    firewall = FirewallManager(enabled=True, dry_run=False)
    firewall.apply('203.0.113.7')
    firewall.apply('203.0.113.7')
    assert len(iptables.rules) == 1


def test_revoke_without_rule_succeeds(iptables):
    FirewallManager(enabled=True, dry_run=False).revoke('203.0.113.7')
    assert [c[1] for c in iptables.commands] == ['-C']


def test_ipv6_uses_ip6tables(iptables):
    FirewallManager(enabled=True, dry_run=False).apply('2001:db8::1')
    assert iptables.commands[-1][0] == 'ip6tables'


def test_failed_insert_raises(monkeypatch):
    monkeypatch.setattr(subprocess, 'run', FakeIptables(fail_on='-I'))
    with pytest.raises(FirewallApplyError) as info:
        FirewallManager(enabled=True, dry_run=False).apply('203.0.113.7')
    assert info.value.address == '203.0.113.7'
    assert 'permission denied' in str(info.value)


def test_missing_binary_raises(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, 'run', missing)
    with pytest.raises(FirewallApplyError):
        FirewallManager(enabled=True, dry_run=False).apply('203.0.113.7')


def test_invalid_address_raises(iptables):
    with pytest.raises(FirewallApplyError):
        FirewallManager(enabled=True, dry_run=False).apply('not-an-address')
    assert iptables.commands == []
