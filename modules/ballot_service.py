"""Proposal registry, vote ledger and admin gate for cl-hive-ballot."""

from __future__ import annotations

import enum
import functools
import inspect
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from modules.ledger_store import (
    AdminKey,
    HasVotedKey,
    LedgerKey,
    LedgerStore,
    ProposalCountKey,
    ProposalKey,
)


def _is_hex(value: str, expected_len: int) -> bool:
    if not isinstance(value, str) or len(value) != expected_len:
        return False
    try:
        int(value, 16)
        return True
    except ValueError:
        return False


def _is_valid_node_pubkey(value: str) -> bool:
    if not isinstance(value, str):
        return False
    if len(value) != 66 or value[:2] not in ("02", "03"):
        return False
    return _is_hex(value, 66)


def _normalize_identity(value: Any) -> Any:
    # Node pubkeys are stored, keyed and signed as lowercase hex.
    return value.strip().lower() if isinstance(value, str) else value


def _coerce_proposal_id(value: Any) -> Optional[int]:
    # Floats are rejected rather than truncated onto another proposal.
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


class ErrorKind(enum.IntEnum):
    AlreadyInitialized = 1
    InvalidProposal = 2
    AlreadyVoted = 3
    ProposalClosed = 4
    Unauthorized = 5
    NotInitialized = 6
    InvalidInput = 7


def _error(kind: ErrorKind, message: str, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"error": message, "code": kind.name, "error_code": int(kind)}
    result.update(extra)
    return result


@dataclass
class Proposal:
    id: int
    title: str = ""
    description: str = ""
    yes_votes: int = 0
    no_votes: int = 0
    is_active: bool = True

    NOT_FOUND_TEXT = "Not_Found"

    @classmethod
    def not_found(cls) -> "Proposal":
        return cls(
            id=0,
            title=cls.NOT_FOUND_TEXT,
            description=cls.NOT_FOUND_TEXT,
            yes_votes=0,
            no_votes=0,
            is_active=False,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=int(data["id"]),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            yes_votes=int(data.get("yes_votes") or 0),
            no_votes=int(data.get("no_votes") or 0),
            is_active=bool(data.get("is_active")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NodeIdentityGate:
    """Decides whether the current caller may act as a given node identity.

    The local node is trusted outright since RPC access to the plugin implies
    control of the node. Any other identity must present a zbase signature
    over the invocation message that CLN's ``checkmessage`` verifies.
    """

    def __init__(self, rpc: Any = None, logger: Optional[Callable[[str, str], None]] = None):
        self.rpc = rpc
        self._logger = logger

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def local_identity(self) -> str:
        if not self.rpc:
            return ""
        try:
            info = self.rpc.getinfo()
            if isinstance(info, dict):
                pubkey = _normalize_identity(str(info.get("id", "")))
                if _is_valid_node_pubkey(pubkey):
                    return pubkey
        except Exception as exc:
            self._log(f"ballot: getinfo failed: {exc}", "warn")
        return ""

    def is_authorized(self, identity: str, message: str, signature: str = "") -> bool:
        identity = _normalize_identity(identity)
        if not _is_valid_node_pubkey(identity):
            return False
        if identity == self.local_identity():
            return True
        if not signature or not self.rpc:
            return False
        try:
            result = self.rpc.checkmessage(message, signature, identity)
        except Exception as exc:
            self._log(f"ballot: checkmessage failed for {identity}: {exc}", "warn")
            return False
        if not isinstance(result, dict):
            return False
        signer = _normalize_identity(str(result.get("pubkey", identity)))
        return bool(result.get("verified")) and signer == identity


def _deferred(fn: Callable[..., Dict[str, Any]]) -> Callable[..., Callable[[], Dict[str, Any]]]:
    """Turn a read-only operation into a preparer with the same signature."""

    @functools.wraps(fn)
    def prepare(*args: Any, **kwargs: Any) -> Callable[[], Dict[str, Any]]:
        return functools.partial(fn, *args, **kwargs)

    return prepare


class BallotService:
    """Service API used by the cl-hive-ballot RPC methods.

    Every public operation runs as a single ledger invocation: it either
    commits all of its writes or, on any error result or exception, none.

    Mutating operations are split in two. A ``_prepare_*`` step resolves
    node identities and signatures through the identity gate, which may
    call lightningd. It returns the body that ``_invoke`` then runs while
    the store holds its write lock.
    """

    MAX_TITLE_LEN = 200
    MAX_DESCRIPTION_LEN = 2_000
    MAX_LIST_LIMIT = 500
    AUTH_PREFIX = "hive-ballot:"

    def __init__(
        self,
        store: LedgerStore,
        rpc: Any = None,
        logger: Optional[Callable[[str, str], None]] = None,
        gated: bool = True,
        ttl_threshold: int = 5_000,
        ttl_extend_to: int = 5_000,
        identity_gate: Optional[NodeIdentityGate] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self._logger = logger
        self.gated = bool(gated)
        self.ttl_threshold = max(0, int(ttl_threshold))
        self.ttl_extend_to = max(0, int(ttl_extend_to))
        self.identity_gate = identity_gate or NodeIdentityGate(rpc=rpc, logger=logger)
        self._time_fn = time_fn
        self.store.initialize()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _invoke(self, body: Callable[[], Dict[str, Any]], dry_run: bool = False) -> Dict[str, Any]:
        with self.store.invocation() as invocation:
            result = body()
            if dry_run or "error" in result:
                invocation.discard()
        return result

    def _write(self, key: LedgerKey, value: Any, now_ts: int) -> None:
        self.store.set(key, value, now_ts)
        self.store.extend_ttl(key, self.ttl_threshold, self.ttl_extend_to, now_ts)

    def _next_proposal_id(self) -> int:
        return int(self.store.get(ProposalCountKey(), 0)) + 1

    def authorization_message(self, operation: str, **args: Any) -> str:
        """Canonical message a remote identity signs to authorize ``operation``."""
        canonical = json.dumps(
            {"operation": operation, "args": args},
            sort_keys=True,
            separators=(",", ":"),
        )
        return f"{self.AUTH_PREFIX}{canonical}"

    def _authorized(self, identity: str, signature: str, operation: str, **args: Any) -> bool:
        message = self.authorization_message(operation, **args)
        if self.identity_gate.is_authorized(identity, message, signature):
            return True
        self._log(f"ballot: {operation} rejected, caller not authorized as {identity}", "warn")
        return False

    def _admin_grant(self, signature: str, operation: str, **args: Any) -> Optional[str]:
        """Return the administrator identity if the caller proved it, else None."""
        if not self.gated:
            return None
        admin = _normalize_identity(self.store.get(AdminKey()) or "")
        if admin and self._authorized(admin, signature, operation, **args):
            return admin
        return None

    def _require_admin(self, grant: Optional[str]) -> Optional[Dict[str, Any]]:
        if not self.gated:
            return None
        admin = _normalize_identity(self.store.get(AdminKey()) or "")
        if not admin:
            return _error(
                ErrorKind.Unauthorized,
                "administrator not initialized",
                hint="run hive-ballot-initialize first",
            )
        if grant != admin:
            return _error(ErrorKind.Unauthorized, "caller is not the administrator")
        return None

    def _load_proposal(self, proposal_id: Any) -> Proposal:
        pid = _coerce_proposal_id(proposal_id)
        if pid is None:
            return Proposal.not_found()
        data = self.store.get(ProposalKey(pid))
        if not data:
            return Proposal.not_found()
        return Proposal.from_dict(data)

    # -- Admin gate ---------------------------------------------------------

    def _prepare_initialize(self, admin: str = "") -> Callable[[], Dict[str, Any]]:
        admin = _normalize_identity(admin)
        if self.gated and not admin:
            admin = self.identity_gate.local_identity()
        return lambda: self._initialize(admin)

    def _initialize(self, admin: str) -> Dict[str, Any]:
        if not self.gated:
            return _error(ErrorKind.Unauthorized, "governance gating is disabled")
        if not _is_valid_node_pubkey(admin):
            return _error(
                ErrorKind.InvalidInput,
                "invalid admin (expected 66-char compressed secp256k1 pubkey)",
            )

        if self.store.has(AdminKey()):
            return _error(ErrorKind.AlreadyInitialized, "administrator already initialized")

        now_ts = self._now()
        self._write(AdminKey(), admin, now_ts)
        self._write(ProposalCountKey(), 0, now_ts)
        self._log(f"ballot: initialized with administrator {admin}")
        return {"ok": True, "admin": admin}

    def _get_admin(self) -> Dict[str, Any]:
        admin = self.store.get(AdminKey())
        if not admin:
            return _error(ErrorKind.NotInitialized, "administrator not initialized")
        return {"ok": True, "admin": admin}

    # -- Proposal registry --------------------------------------------------

    def _text_error(self, title: Any, description: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(title, str):
            return _error(ErrorKind.InvalidInput, "title must be a string")
        if not isinstance(description, str):
            return _error(ErrorKind.InvalidInput, "description must be a string")
        if len(title) > self.MAX_TITLE_LEN:
            return _error(ErrorKind.InvalidInput, f"title too long (max {self.MAX_TITLE_LEN} chars)")
        if len(description) > self.MAX_DESCRIPTION_LEN:
            return _error(
                ErrorKind.InvalidInput,
                f"description too long (max {self.MAX_DESCRIPTION_LEN} chars)",
            )
        return None

    def _prepare_create_proposal(
        self, title: str = "", description: str = "", signature: str = ""
    ) -> Callable[[], Dict[str, Any]]:
        proposal_id = self._next_proposal_id()
        grant = None
        if self._text_error(title, description) is None:
            grant = self._admin_grant(
                signature,
                "create_proposal",
                proposal_id=proposal_id,
                title=title,
                description=description,
            )
        return lambda: self._create_proposal(title, description, proposal_id, grant)

    def _create_proposal(
        self, title: str, description: str, proposal_id: int, grant: Optional[str]
    ) -> Dict[str, Any]:
        text_error = self._text_error(title, description)
        if text_error:
            return text_error

        auth_error = self._require_admin(grant)
        if auth_error:
            return auth_error
        # The signature covered proposal_id; refuse if another create landed first.
        if self._next_proposal_id() != proposal_id:
            return _error(
                ErrorKind.Unauthorized,
                "proposal count changed during authorization, sign again",
                proposal_id=proposal_id,
            )

        proposal = Proposal(id=proposal_id, title=title, description=description)
        now_ts = self._now()
        self._write(ProposalKey(proposal_id), proposal.to_dict(), now_ts)
        self._write(ProposalCountKey(), proposal_id, now_ts)
        self._log(f"ballot: proposal created with id {proposal_id}")
        return {"ok": True, "proposal_id": proposal_id}

    def _prepare_close_proposal(self, proposal_id: int, signature: str = "") -> Callable[[], Dict[str, Any]]:
        grant = self._admin_grant(
            signature, "close_proposal", proposal_id=_coerce_proposal_id(proposal_id)
        )
        return lambda: self._close_proposal(proposal_id, grant)

    def _close_proposal(self, proposal_id: Any, grant: Optional[str]) -> Dict[str, Any]:
        auth_error = self._require_admin(grant)
        if auth_error:
            return auth_error

        proposal = self._load_proposal(proposal_id)
        if proposal.id == 0:
            return _error(ErrorKind.InvalidProposal, "proposal not found", proposal_id=proposal_id)
        if not proposal.is_active:
            return _error(ErrorKind.ProposalClosed, "proposal already closed", proposal_id=proposal_id)

        proposal.is_active = False
        self._write(ProposalKey(proposal.id), proposal.to_dict(), self._now())
        self._log(f"ballot: proposal {proposal.id} is now closed")
        return {"ok": True, "proposal": proposal.to_dict()}

    def _view_proposal(self, proposal_id: int) -> Dict[str, Any]:
        proposal = self._load_proposal(proposal_id)
        return {"ok": True, "found": proposal.id != 0, "proposal": proposal.to_dict()}

    def _get_proposal_count(self) -> Dict[str, Any]:
        return {"ok": True, "proposal_count": int(self.store.get(ProposalCountKey(), 0))}

    def _list_proposals(self, offset: int = 0, limit: int = 50) -> Dict[str, Any]:
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            return _error(ErrorKind.InvalidInput, "offset must be a non-negative integer")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            return _error(ErrorKind.InvalidInput, "limit must be positive")
        limit = min(limit, self.MAX_LIST_LIMIT)

        count = int(self.store.get(ProposalCountKey(), 0))
        proposals: List[Dict[str, Any]] = []
        for pid in range(offset + 1, min(count, offset + limit) + 1):
            proposals.append(self._load_proposal(pid).to_dict())
        return {
            "ok": True,
            "proposal_count": count,
            "count": len(proposals),
            "proposals": proposals,
        }

    # -- Vote ledger --------------------------------------------------------

    def _prepare_cast_vote(
        self, proposal_id: int, vote: bool, voter: str = "", signature: str = ""
    ) -> Callable[[], Dict[str, Any]]:
        voter = _normalize_identity(voter) or self.identity_gate.local_identity()
        authorized = False
        if isinstance(vote, bool) and _is_valid_node_pubkey(voter):
            authorized = self._authorized(
                voter,
                signature,
                "cast_vote",
                proposal_id=_coerce_proposal_id(proposal_id),
                vote=vote,
                voter=voter,
            )
        return lambda: self._cast_vote(proposal_id, vote, voter, authorized)

    def _cast_vote(self, proposal_id: Any, vote: bool, voter: str, authorized: bool) -> Dict[str, Any]:
        if not isinstance(vote, bool):
            return _error(ErrorKind.InvalidInput, "vote must be a boolean")
        if not _is_valid_node_pubkey(voter):
            return _error(
                ErrorKind.InvalidInput,
                "invalid voter (expected 66-char compressed secp256k1 pubkey)",
            )
        if not authorized:
            return _error(ErrorKind.Unauthorized, "caller is not authorized as voter", voter=voter)

        pid = _coerce_proposal_id(proposal_id)
        vote_key = HasVotedKey(pid, voter) if pid is not None else None
        if vote_key is not None and self.store.has(vote_key):
            return _error(ErrorKind.AlreadyVoted, "voter already voted on this proposal", proposal_id=proposal_id)

        proposal = self._load_proposal(proposal_id)
        if proposal.id == 0 or vote_key is None:
            return _error(ErrorKind.InvalidProposal, "proposal not found", proposal_id=proposal_id)
        if not proposal.is_active:
            return _error(ErrorKind.ProposalClosed, "proposal is closed", proposal_id=proposal_id)

        if vote:
            proposal.yes_votes += 1
        else:
            proposal.no_votes += 1

        now_ts = self._now()
        self._write(ProposalKey(proposal.id), proposal.to_dict(), now_ts)
        self._write(vote_key, True, now_ts)
        self._log(f"ballot: vote cast on proposal {proposal.id}")
        return {
            "ok": True,
            "proposal_id": proposal.id,
            "voter": voter,
            "vote": vote,
            "proposal": proposal.to_dict(),
        }

    def _has_voted(self, proposal_id: int, voter: str) -> Dict[str, Any]:
        pid = _coerce_proposal_id(proposal_id)
        voter = _normalize_identity(voter)
        voted = pid is not None and isinstance(voter, str) and self.store.has(HasVotedKey(pid, voter))
        return {"ok": True, "proposal_id": proposal_id, "voter": voter, "has_voted": voted}

    # -- Public operations --------------------------------------------------

    def initialize(self, admin: str = "") -> Dict[str, Any]:
        return self._invoke(self._prepare_initialize(admin))

    def create_proposal(self, title: str = "", description: str = "", signature: str = "") -> Dict[str, Any]:
        return self._invoke(self._prepare_create_proposal(title, description, signature))

    def close_proposal(self, proposal_id: int, signature: str = "") -> Dict[str, Any]:
        return self._invoke(self._prepare_close_proposal(proposal_id, signature))

    def cast_vote(self, proposal_id: int, vote: bool, voter: str = "", signature: str = "") -> Dict[str, Any]:
        return self._invoke(self._prepare_cast_vote(proposal_id, vote, voter, signature))

    def view_proposal(self, proposal_id: int) -> Dict[str, Any]:
        return self._view_proposal(proposal_id)

    def get_proposal_count(self) -> Dict[str, Any]:
        return self._get_proposal_count()

    def get_admin(self) -> Dict[str, Any]:
        return self._get_admin()

    def list_proposals(self, offset: int = 0, limit: int = 50) -> Dict[str, Any]:
        return self._list_proposals(offset, limit)

    def has_voted(self, proposal_id: int, voter: str) -> Dict[str, Any]:
        return self._has_voted(proposal_id, voter)

    def simulate(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run an operation against current state and roll back whatever it wrote."""
        preparers: Dict[str, Callable[..., Callable[[], Dict[str, Any]]]] = {
            "initialize": self._prepare_initialize,
            "create_proposal": self._prepare_create_proposal,
            "close_proposal": self._prepare_close_proposal,
            "cast_vote": self._prepare_cast_vote,
            "view_proposal": _deferred(self._view_proposal),
            "get_proposal_count": _deferred(self._get_proposal_count),
            "get_admin": _deferred(self._get_admin),
            "list_proposals": _deferred(self._list_proposals),
            "has_voted": _deferred(self._has_voted),
        }
        prepare = preparers.get(operation)
        if prepare is None:
            return _error(ErrorKind.InvalidInput, "unknown operation", valid_operations=sorted(preparers))

        params = params or {}
        if not isinstance(params, dict):
            return _error(ErrorKind.InvalidInput, "params must be an object")
        try:
            inspect.signature(prepare).bind(**params)
        except TypeError as exc:
            return _error(ErrorKind.InvalidInput, f"invalid params for {operation}: {exc}")

        result = self._invoke(prepare(**params), dry_run=True)
        return {"ok": True, "simulated": True, "operation": operation, "result": result}

    def status(self) -> Dict[str, Any]:
        count = int(self.store.get(ProposalCountKey(), 0))
        open_count = 0
        for pid in range(1, count + 1):
            if self._load_proposal(pid).is_active:
                open_count += 1
        return {
            "ok": True,
            "gated": self.gated,
            "admin": self.store.get(AdminKey()),
            "proposal_count": count,
            "open_proposals": open_count,
            "closed_proposals": count - open_count,
            "total_votes": self.store.count_family(HasVotedKey.FAMILY),
            "ttl_threshold": self.ttl_threshold,
            "ttl_extend_to": self.ttl_extend_to,
            "db_path": self.store.db_path,
        }
