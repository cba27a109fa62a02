"""
opsdash.services.role_policy — Email → Role Derivation
=======================================================

A role is derived from an email address by walking an ordered list of
``(predicate, role)`` rules; the first rule that matches wins and an address
that matches nothing is a plain ``user``.

Default rule set::

    contains "admin"            → admin
    ends with an admin domain   → admin     (ADMIN_DOMAINS)
    contains "mod"/"moderator"  → moderator

Extra rules can be declared in the YAML config file and are evaluated
*before* the defaults::

    role_rules:
      - {match: equals,   value: "ops-lead@example.com", role: admin}
      - {match: endswith, value: "@support.example.com", role: moderator}
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from opsdash.config import DashboardConfig
from opsdash.database.models import Role
from opsdash.errors import ConfigError

Predicate = Callable[[str], bool]


@dataclass(frozen=True, slots=True)
class RoleRule:
    """One ``predicate → role`` pair.  ``description`` is for log output."""
    predicate: Predicate
    role: Role
    description: str = ""

    def matches(self, email: str) -> bool:
        return self.predicate(email)


# ---------------------------------------------------------------------------
# Predicate builders
# ---------------------------------------------------------------------------
def contains(fragment: str) -> Predicate:
    fragment = fragment.lower()
    return lambda email: fragment in email


def endswith(suffix: str) -> Predicate:
    suffix = suffix.lower()
    return lambda email: email.endswith(suffix)


def equals(value: str) -> Predicate:
    value = value.lower()
    return lambda email: email == value


_MATCHERS: dict[str, Callable[[str], Predicate]] = {
    "contains": contains,
    "endswith": endswith,
    "equals": equals,
}


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------
def default_rules(admin_domains: Iterable[str] = ()) -> list[RoleRule]:
    rules = [RoleRule(contains("admin"), Role.ADMIN, "contains 'admin'")]
    for domain in admin_domains:
        domain = domain.lower().lstrip("@")
        rules.append(RoleRule(endswith("@" + domain), Role.ADMIN, f"domain {domain}"))
    rules.append(RoleRule(contains("mod"), Role.MODERATOR, "contains 'mod'"))
    rules.append(RoleRule(contains("moderator"), Role.MODERATOR, "contains 'moderator'"))
    return rules


def rule_from_mapping(raw: dict) -> RoleRule:
    """Build a rule from a ``{match, value, role}`` mapping (YAML)."""
    try:
        matcher = _MATCHERS[str(raw["match"]).lower()]
        value = str(raw["value"])
        role = Role(str(raw["role"]).lower())
    except KeyError as exc:
        raise ConfigError(f"Invalid role rule {raw!r}: missing or unknown {exc}") from None
    except ValueError:
        raise ConfigError(f"Invalid role rule {raw!r}: unknown role") from None
    return RoleRule(matcher(value), role, f"{raw['match']} {value!r}")


def rules_from_config(cfg: DashboardConfig) -> list[RoleRule]:
    configured = [rule_from_mapping(r) for r in cfg.role_rules]
    return configured + default_rules(cfg.admin_domains)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------
def role_of(email: str, rules: Sequence[RoleRule]) -> Role:
    """Pure: first matching rule's role, else ``user``."""
    normalized = normalize_email(email)
    for rule in rules:
        if rule.matches(normalized):
            return rule.role
    return Role.USER


class RolePolicy:
    """Bound rule set, built once at startup and read-only afterwards."""

    def __init__(self, rules: Sequence[RoleRule] | None = None) -> None:
        self.rules: tuple[RoleRule, ...] = tuple(rules if rules is not None else default_rules())

    @classmethod
    def from_config(cls, cfg: DashboardConfig) -> RolePolicy:
        return cls(rules_from_config(cfg))

    def role_of(self, email: str) -> Role:
        return role_of(email, self.rules)

    def effective_role(self, email: str, granted: Role | str, *, locked: bool = False) -> Role:
        """Higher of the granted role and the configured derivation.

        A role an admin assigned explicitly (*locked*) is returned as is, so a
        demotion sticks even for an address the rules would elevate.
        """
        if locked:
            return Role(granted)
        return Role.highest(granted, self.role_of(email))
