from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    SCHEDULER = "scheduler"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


ROLE_SCOPES: dict[str, set[str]] = {
    "user": set(),
    "moderator": {"facts:moderate", "pipeline:read", "seeds:read"},
    "admin": {
        "facts:moderate",
        "pipeline:read",
        "pipeline:run",
        "refresh:run",
        "seeds:read",
        "seeds:write",
        "signals:write",
    },
}

SCHEDULER_SCOPES: set[str] = {"pipeline:read", "pipeline:run", "refresh:run"}


class AccessPolicy:
    """Maps every protected action to the scopes a principal must hold."""

    ACTION_SCOPES: dict[str, set[str]] = {
        "seeds.import": {"seeds:write"},
        "seeds.discover": {"seeds:write"},
        "seeds.list": {"seeds:read"},
        "seeds.resolve": {"pipeline:run"},
        "seeds.promote": {"pipeline:run"},
        "crawl.enqueue": {"pipeline:run"},
        "crawl.run": {"pipeline:run"},
        "crawl.reap": {"pipeline:run"},
        "crawl.retry": {"pipeline:run"},
        "crawl.list": {"pipeline:read"},
        "facts.moderate": {"facts:moderate"},
        "facts.history": {"facts:moderate"},
        "facts.pending": {"facts:moderate"},
        "facts.normalize": {"pipeline:run"},
        "dedupe.run": {"pipeline:run"},
        "refresh.run": {"refresh:run"},
        "institutions.changes": {"pipeline:read"},
        "institutions.import_place": {"seeds:write"},
        "institutions.signals": {"signals:write"},
    }

    def scopes_for(self, action: str) -> set[str]:
        try:
            return self.ACTION_SCOPES[action]
        except KeyError as exc:
            raise PermissionError(f"unknown action: {action}") from exc

    def authorize(self, principal: Principal, action: str) -> None:
        principal.require_scopes(self.scopes_for(action))


ACCESS_POLICY = AccessPolicy()
