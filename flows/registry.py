"""
Flow Registry — Loads, validates, and resolves published flows.

Flows come from the designer as JSON (or from YAML config). Each
registered version gets one GraphIndex that every session running that
version shares.

Resolution order for an inbound message:
  1. Exact match by flow id
  2. Active flow whose Start node triggers on a keyword in the message
  3. Active flow marked as default
  4. First active flow without a keyword trigger
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from flows.graph import GraphIndex
from flows.models import Flow

logger = structlog.get_logger()


class FlowValidationError(ValueError):
    """A flow failed validation and cannot be registered."""

    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(errors)}")


class FlowRegistry:
    """Central registry of flows and their cached graph indexes."""

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._indexes: dict[tuple[str, int], GraphIndex] = {}

    # ── Registration ──────────────────────────────────

    def register(self, flow: Flow | dict[str, Any]) -> Flow:
        """Register a flow (model or raw designer dict). Replaces older versions."""
        if isinstance(flow, dict):
            flow = self.parse(flow)

        index = GraphIndex(flow)
        errors = index.validate()
        if errors:
            logger.error("invalid_flow", flow_id=flow.id, errors=errors)
            raise FlowValidationError(flow.id, errors)

        self._flows[flow.id] = flow
        self._indexes[(flow.id, flow.version)] = index

        logger.info("flow_registered",
                    flow_id=flow.id,
                    name=flow.name,
                    version=flow.version,
                    nodes=len(flow.nodes),
                    edges=len(flow.edges))
        return flow

    def register_from_config(self, config: list[dict[str, Any]]) -> int:
        """Load flows from YAML config. Invalid entries are logged and skipped."""
        count = 0
        for raw in config:
            try:
                self.register(raw)
            except FlowValidationError as e:
                logger.error("config_flow_skipped", flow_id=e.flow_id, errors=e.errors)
                continue
            count += 1
        logger.info("flows_loaded", count=count, skipped=len(config) - count)
        return count

    def load_directory(self, directory: str) -> int:
        """Register every *.json / *.yaml / *.yml flow file in a directory."""
        path = Path(directory)
        if not path.is_dir():
            logger.warning("flows_dir_missing", path=str(path))
            return 0

        count = 0
        for file in sorted(path.iterdir()):
            if file.suffix not in (".json", ".yaml", ".yml"):
                continue
            try:
                with open(file) as f:
                    raw = json.load(f) if file.suffix == ".json" else yaml.safe_load(f)
                if not isinstance(raw, dict):
                    raise FlowValidationError(file.stem, ["file does not contain a flow object"])
                self.register(raw)
            except (FlowValidationError, json.JSONDecodeError, yaml.YAMLError) as e:
                logger.error("flow_file_skipped", file=str(file), error=str(e))
                continue
            count += 1
        logger.info("flows_dir_loaded", path=str(path), count=count)
        return count

    @staticmethod
    def parse(raw: dict[str, Any]) -> Flow:
        try:
            return Flow.model_validate(raw)
        except ValidationError as e:
            flow_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            logger.error("invalid_flow", flow_id=flow_id, errors=errors)
            raise FlowValidationError(flow_id, errors) from e

    def unregister(self, flow_id: str) -> bool:
        flow = self._flows.pop(flow_id, None)
        if flow is None:
            return False
        # cached indexes stay for sessions still pinned to old versions
        logger.info("flow_unregistered", flow_id=flow_id)
        return True

    # ── Lookup ────────────────────────────────────────

    def get(self, flow_id: str) -> Optional[Flow]:
        return self._flows.get(flow_id)

    def get_index(self, flow_id: str, version: int = None) -> Optional[GraphIndex]:
        """Graph index for a flow version; latest registered version by default."""
        if version is None:
            flow = self._flows.get(flow_id)
            if flow is None:
                return None
            version = flow.version
        return self._indexes.get((flow_id, version))

    def list_all(self) -> list[Flow]:
        return list(self._flows.values())

    def resolve_for_message(self, text: str = "", flow_id: str = "") -> Optional[Flow]:
        """Pick the flow that should start a new session for this message."""
        if flow_id:
            return self._flows.get(flow_id)

        active = [f for f in self._flows.values() if f.is_active]
        lowered = (text or "").lower()

        if lowered:
            for flow in active:
                if any(kw and kw.lower() in lowered for kw in flow.start_keywords()):
                    return flow

        for flow in active:
            if flow.is_default:
                return flow

        untriggered = [f for f in active if not f.start_keywords()]
        return untriggered[0] if untriggered else None
