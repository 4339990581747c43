"""Artifact checks: deterministic validation of a generated coach config.

Three passes:

* check_structure: required identifiers and prompt text. Missing anything
  is fatal (ArtifactStructuralError).
* check_safety: risk factors from the intake must have matching mitigation
  fields. Findings are warnings with a 0-10 score.
* check_coherence: known-incompatible personality / methodology pairings.
  Findings are warnings with a 0-10 score.
"""

from coach_intake.errors import ArtifactStructuralError
from coach_intake.utils.catalogs import load_catalogs

MAX_SCORE = 10
APPROVAL_THRESHOLD = 7


def _get(data: dict, dotted: str):
    current = data
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


REQUIRED_PATHS = (
    ("coach_id", "Missing coach id."),
    ("coach_name", "Missing coach name."),
    ("selected_personality.primary_template", "Missing personality template selection."),
    ("selected_methodology.primary_methodology", "Missing methodology selection."),
    ("generated_prompts.personality_prompt", "Missing generated personality prompt."),
)


def structural_issues(artifact) -> list[str]:
    """Return the structural problems of artifact. Empty list = structurally sound."""
    if not isinstance(artifact, dict):
        return ["Artifact is not a JSON object."]
    issues = []
    for path, message in REQUIRED_PATHS:
        value = _get(artifact, path)
        if not isinstance(value, str) or not value.strip():
            issues.append(message)
    return issues


def check_structure(artifact) -> None:
    """Raise ArtifactStructuralError listing every missing required field."""
    issues = structural_issues(artifact)
    if issues:
        raise ArtifactStructuralError(" ".join(issues))


def _warning(category: str, message: str, penalty: int) -> dict:
    return {"category": category, "message": message, "penalty": penalty}


def _result(warnings: list[dict]) -> dict:
    score = max(0, MAX_SCORE - sum(w["penalty"] for w in warnings))
    return {
        "score": score,
        "warnings": warnings,
        "approved": not warnings or score >= APPROVAL_THRESHOLD,
    }


def check_safety(artifact: dict, safety_profile: dict) -> dict:
    """Check that the artifact mitigates the risks in safety_profile."""
    technical = artifact.get("technical_config") or {}
    constraints = technical.get("safety_constraints") or {}
    prompts = artifact.get("generated_prompts") or {}
    methodology = _get(artifact, "selected_methodology.primary_methodology")
    warnings = []

    if safety_profile.get("injuries") and not technical.get("injury_considerations"):
        warnings.append(_warning("injury", "Injury considerations not included in technical config.", 2))

    if safety_profile.get("contraindications") and not constraints.get("contraindicated_exercises"):
        warnings.append(_warning("contraindication", "Contraindicated exercises not properly restricted.", 2))

    if not constraints.get("volume_progression_limit"):
        warnings.append(_warning("progression", "Volume progression limits not specified.", 1))

    if not prompts.get("safety_integrated_prompt"):
        warnings.append(_warning("personality", "Safety considerations not integrated into coach personality.", 1))

    if safety_profile.get("experience_level") == "beginner" and methodology == "misfit_athletics":
        warnings.append(_warning("experience", "High-volume methodology not appropriate for beginner.", 2))

    return _result(warnings)


def check_coherence(artifact: dict) -> dict:
    """Flag personality / secondary-influence / methodology pairings known to clash."""
    personality = artifact.get("selected_personality") or {}
    primary = personality.get("primary_template")
    secondary = personality.get("secondary_influences") or []
    methodology = _get(artifact, "selected_methodology.primary_methodology")
    warnings = []

    for conflict in load_catalogs().coherence_conflicts:
        if conflict.primary != primary:
            continue
        if conflict.secondary and conflict.secondary not in secondary:
            continue
        if conflict.methodology and conflict.methodology != methodology:
            continue
        warnings.append(_warning("coherence", conflict.trait, conflict.penalty))

    return _result(warnings)
