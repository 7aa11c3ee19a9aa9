"""Reconciliation protocol: request construction, decision codec, validation.

A reconciliation call shows an external reasoner one incoming observation
and the top near-duplicates already stored, addressed only by their
position in the candidate list. The reasoner answers with one JSON
decision:

    {"decision": "ADD" | "UPDATE" | "DELETE" | "NONE",
     "candidate_index": int | null,
     "merged": {...} | null}

ModelReconciler implements the reasoner on top of any InferenceService.
Applying a decision to storage is SQLiteMemory.apply_decision.
"""

import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from coop_memory.protocols import DecodeError, InferenceService, ValidationError
from coop_memory.types import (
    AddDecision,
    DeleteDecision,
    NewObservation,
    NoneDecision,
    Observation,
    ReconcileCandidate,
    ReconcileDecision,
    ReconcileObservation,
    ReconcileRequest,
    UpdateDecision,
)

logger = logging.getLogger(__name__)

DECISION_ADD = "ADD"
DECISION_UPDATE = "UPDATE"
DECISION_DELETE = "DELETE"
DECISION_NONE = "NONE"

SYSTEM_PROMPT = """You reconcile structured memory observations.
Return exactly one JSON object and nothing else.
Schema:
{
  "decision": "ADD" | "UPDATE" | "DELETE" | "NONE",
  "candidate_index": integer or null,
  "merged": {
    "store": string,
    "obs_type": string,
    "title": string,
    "narrative": string,
    "facts": string[],
    "tags": string[],
    "related_files": string[],
    "related_people": string[]
  } or null
}
Rules:
- Never reference IDs; use candidate_index only.
- Use ADD when incoming is distinct from every candidate.
- Use UPDATE when incoming should merge into one candidate; include merged.
- Use DELETE when one candidate is stale or incorrect and should be replaced by incoming.
- Use NONE when incoming adds no new value and only mention_count should increase.
- candidate_index must be null for ADD and set for UPDATE/DELETE/NONE.
- merged is required for UPDATE and must be null otherwise."""


# === Request construction ===


def build_reconcile_request(
    incoming: NewObservation, candidates: Sequence[Tuple[Observation, float]]
) -> ReconcileRequest:
    """Id-free request; candidate ``index`` is the position in ``candidates``."""
    return ReconcileRequest(
        incoming=ReconcileObservation.from_new(incoming),
        candidates=[
            ReconcileCandidate(
                index=i,
                score=score,
                mention_count=obs.mention_count,
                created_at=obs.created_at,
                observation=ReconcileObservation.from_observation(obs),
            )
            for i, (obs, score) in enumerate(candidates)
        ],
    )


def request_to_dict(request: ReconcileRequest) -> Dict[str, Any]:
    return {
        "incoming": asdict(request.incoming),
        "candidates": [
            {
                "index": c.index,
                "score": round(c.score, 6),
                "mention_count": c.mention_count,
                "created_at": c.created_at.isoformat() if c.created_at else None,
                "observation": asdict(c.observation),
            }
            for c in request.candidates
        ],
    }


def build_user_prompt(request: ReconcileRequest) -> str:
    payload = json.dumps(request_to_dict(request), indent=2, ensure_ascii=False)
    return f"incoming and candidate set:\n{payload}\n\nRespond with strict JSON only."


# === Decision codec ===


def _string_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DecodeError(f"merged.{field_name} must be a list of strings")
    return list(value)


def observation_from_dict(data: Any) -> ReconcileObservation:
    if not isinstance(data, dict):
        raise DecodeError("merged must be a JSON object")
    for key in ("store", "obs_type", "title", "narrative"):
        if data.get(key) is not None and not isinstance(data[key], str):
            raise DecodeError(f"merged.{key} must be a string")
    return ReconcileObservation(
        store=data.get("store") or "",
        obs_type=data.get("obs_type") or "",
        title=data.get("title") or "",
        narrative=data.get("narrative") or "",
        facts=_string_list(data.get("facts"), "facts"),
        tags=_string_list(data.get("tags"), "tags"),
        related_files=_string_list(data.get("related_files"), "related_files"),
        related_people=_string_list(data.get("related_people"), "related_people"),
    )


def decision_to_dict(decision: ReconcileDecision) -> Dict[str, Any]:
    if isinstance(decision, AddDecision):
        return {"decision": DECISION_ADD, "candidate_index": None, "merged": None}
    if isinstance(decision, UpdateDecision):
        return {
            "decision": DECISION_UPDATE,
            "candidate_index": decision.candidate_index,
            "merged": asdict(decision.merged),
        }
    if isinstance(decision, DeleteDecision):
        return {
            "decision": DECISION_DELETE,
            "candidate_index": decision.candidate_index,
            "merged": None,
        }
    if isinstance(decision, NoneDecision):
        return {
            "decision": DECISION_NONE,
            "candidate_index": decision.candidate_index,
            "merged": None,
        }
    raise TypeError(f"Unknown reconciliation decision: {decision!r}")


def serialize_decision(decision: ReconcileDecision) -> str:
    return json.dumps(decision_to_dict(decision), ensure_ascii=False)


def _candidate_index(data: Dict[str, Any]) -> Optional[int]:
    value = data.get("candidate_index")
    if value is None:
        return None
    # bool is an int subclass; true/false are not indices
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"candidate_index must be an integer, got {value!r}")
    return value


def decision_from_dict(data: Any) -> ReconcileDecision:
    """Decode a decision object.

    Raises:
        DecodeError: wrong JSON shape or unknown decision kind
        ValidationError: an index or merged payload present/absent against the rules
    """
    if not isinstance(data, dict):
        raise DecodeError("reconciliation decision must be a JSON object")
    kind = data.get("decision")
    if not isinstance(kind, str):
        raise DecodeError("reconciliation decision is missing the 'decision' field")
    kind = kind.strip().upper()
    index = _candidate_index(data)
    merged = data.get("merged")

    if kind == DECISION_ADD:
        if index is not None:
            raise ValidationError("ADD decision must not carry a candidate_index")
        return AddDecision()

    if kind not in (DECISION_UPDATE, DECISION_DELETE, DECISION_NONE):
        raise DecodeError(f"unknown reconciliation decision '{kind}'")
    if index is None:
        raise ValidationError(f"{kind} decision missing candidate_index")

    if kind == DECISION_UPDATE:
        if merged is None:
            raise ValidationError("UPDATE decision missing merged")
        return UpdateDecision(candidate_index=index, merged=observation_from_dict(merged))
    if kind == DECISION_DELETE:
        return DeleteDecision(candidate_index=index)
    return NoneDecision(candidate_index=index)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    # Drop the opening fence and its language tag (```json, ```JSON, ```),
    # which may share a line with the payload, and a closing fence
    body = stripped[3:]
    tag_end = 0
    while tag_end < len(body) and body[tag_end].isalpha():
        tag_end += 1
    body = body[tag_end:].rstrip()
    if body.endswith("```"):
        body = body[:-3]
    return body.strip()


def extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` in ``text``.

    Braces inside JSON strings are ignored.

    Raises:
        DecodeError: no balanced object found
    """
    start = text.find("{")
    if start == -1:
        raise DecodeError("no JSON object found in reconciliation response")

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    raise DecodeError("unbalanced JSON object in reconciliation response")


def parse_reconciliation_response(text: str) -> ReconcileDecision:
    """Parse a reasoner response that may be wrapped in prose or a code fence."""
    body = _strip_code_fence(text or "")
    raw = extract_json_object(body)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid reconciliation JSON: {e}") from e
    return decision_from_dict(data)


# === Validation ===


def validate_decision(decision: ReconcileDecision, candidate_count: int) -> ReconcileDecision:
    """Check a decision against the candidate list it answers.

    Raises:
        ValidationError: out-of-range index or empty merged payload
    """
    if isinstance(decision, AddDecision):
        return decision
    if not isinstance(decision, (UpdateDecision, DeleteDecision, NoneDecision)):
        raise TypeError(f"Unknown reconciliation decision: {decision!r}")

    index = decision.candidate_index
    if not 0 <= index < candidate_count:
        raise ValidationError(
            f"candidate_index {index} out of range for {candidate_count} candidate(s)"
        )
    if isinstance(decision, UpdateDecision) and decision.merged.is_empty():
        raise ValidationError("UPDATE decision carries an empty merged payload")
    return decision


def decision_label(decision: ReconcileDecision) -> str:
    return decision_to_dict(decision)["decision"]


# === Model-backed reconciler ===


class ModelReconciler:
    """Reconciler that asks a language model through an InferenceService."""

    def __init__(self, inference: InferenceService, system_prompt: str = SYSTEM_PROMPT):
        self._inference = inference
        self._system_prompt = system_prompt

    def reconcile(self, request: ReconcileRequest) -> ReconcileDecision:
        logger.info(
            f"Reconciliation request with {len(request.candidates)} candidate(s)"
        )
        response = self._inference.infer(build_user_prompt(request), system=self._system_prompt)
        decision = parse_reconciliation_response(response)
        validate_decision(decision, len(request.candidates))
        logger.info(f"Reconciliation decision: {decision_label(decision)}")
        return decision
