#!/usr/bin/env python3
"""cl-hive-ballot: proposal and single-vote ledger plugin."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.ballot_service import BallotService, ErrorKind
from modules.ledger_store import LedgerStore

plugin = Plugin()
service: BallotService | None = None


plugin.add_option(
    name="hive-ballot-db-path",
    default="~/.lightning/cl_hive_ballot.db",
    description="SQLite path for cl-hive-ballot ledger state",
)

plugin.add_option(
    name="hive-ballot-gated",
    default="true",
    description="Require the administrator for proposal creation and closing",
)

plugin.add_option(
    name="hive-ballot-ttl-threshold",
    default="5000",
    description="Extend an entry's lifetime hint when fewer seconds than this remain",
)

plugin.add_option(
    name="hive-ballot-ttl-extend",
    default="5000",
    description="Seconds an entry's lifetime hint is pushed out to after a write",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_vote(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y"}:
            return True
        if lowered in {"0", "false", "no", "n"}:
            return False
    return value


def _invalid_input(message: str) -> Dict[str, Any]:
    kind = ErrorKind.InvalidInput
    return {"error": message, "code": kind.name, "error_code": int(kind)}


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> BallotService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("hive-ballot-db-path") or "~/.lightning/cl_hive_ballot.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    gated = _parse_bool(options.get("hive-ballot-gated", "true"))
    ttl_threshold = max(0, _parse_int(options.get("hive-ballot-ttl-threshold"), 5_000))
    ttl_extend_to = max(0, _parse_int(options.get("hive-ballot-ttl-extend"), 5_000))

    store = LedgerStore(db_path=db_path, logger=_logger)

    global service
    service = BallotService(
        store=store,
        rpc=plugin.rpc,
        logger=_logger,
        gated=gated,
        ttl_threshold=ttl_threshold,
        ttl_extend_to=ttl_extend_to,
    )

    plugin.log(
        "cl-hive-ballot initialized "
        f"(db_path={db_path}, gated={gated}, ttl={ttl_threshold}/{ttl_extend_to})"
    )


@plugin.method("hive-ballot-initialize")
def hive_ballot_initialize(plugin: Plugin, admin: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().initialize(admin=admin)


@plugin.method("hive-ballot-admin")
def hive_ballot_admin(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().get_admin()


@plugin.method("hive-ballot-create")
def hive_ballot_create(
    plugin: Plugin,
    title: str = "",
    description: str = "",
    signature: str = "",
) -> Dict[str, Any]:
    del plugin
    return _require_service().create_proposal(title=title, description=description, signature=signature)


@plugin.method("hive-ballot-close")
def hive_ballot_close(plugin: Plugin, proposal_id: int, signature: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().close_proposal(
        proposal_id=proposal_id,
        signature=signature,
    )


@plugin.method("hive-ballot-vote")
def hive_ballot_vote(
    plugin: Plugin,
    proposal_id: int,
    vote: str,
    voter: str = "",
    signature: str = "",
) -> Dict[str, Any]:
    del plugin
    return _require_service().cast_vote(
        proposal_id=proposal_id,
        vote=_parse_vote(vote),
        voter=voter,
        signature=signature,
    )


@plugin.method("hive-ballot-view")
def hive_ballot_view(plugin: Plugin, proposal_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().view_proposal(proposal_id=proposal_id)


@plugin.method("hive-ballot-count")
def hive_ballot_count(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().get_proposal_count()


@plugin.method("hive-ballot-list")
def hive_ballot_list(plugin: Plugin, offset: int = 0, limit: int = 50) -> Dict[str, Any]:
    del plugin
    return _require_service().list_proposals(
        offset=_parse_int(offset, -1),
        limit=_parse_int(limit, 0),
    )


@plugin.method("hive-ballot-has-voted")
def hive_ballot_has_voted(plugin: Plugin, proposal_id: int, voter: str = "") -> Dict[str, Any]:
    del plugin
    svc = _require_service()
    voter = voter or svc.identity_gate.local_identity()
    return svc.has_voted(proposal_id=proposal_id, voter=voter)


@plugin.method("hive-ballot-simulate")
def hive_ballot_simulate(plugin: Plugin, operation: str, params_json: str = "{}") -> Dict[str, Any]:
    del plugin

    try:
        params = json.loads(params_json) if params_json else {}
    except (json.JSONDecodeError, TypeError):
        return _invalid_input("invalid params_json")

    if not isinstance(params, dict):
        return _invalid_input("params_json must decode to an object")

    return _require_service().simulate(operation=operation, params=params)


@plugin.method("hive-ballot-status")
def hive_ballot_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


if __name__ == "__main__":
    plugin.run()
