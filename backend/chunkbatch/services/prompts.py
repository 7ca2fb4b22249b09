"""Prompt construction for per-chunk analysis requests."""

import re

from chunkbatch.models.chunk import Chunk
from chunkbatch.models.project import Project

DEFAULT_ANALYSIS_TYPE = "analisi_contenuti"

ANALYSIS_TYPES: dict[str, tuple[str, ...]] = {
    "triennale": (
        "analisi_strutturale",
        "analisi_metodologica",
        "analisi_contenuti",
        "analisi_bibliografica",
        "analisi_formale",
        "analisi_coerenza_argomentativa",
        "analisi_originalita_contributo",
        "analisi_rilevanza_disciplinare",
    ),
    "magistrale": (
        "analisi_strutturale_avanzata",
        "analisi_metodologica_rigorosa",
        "analisi_contenuti_specialistici",
        "analisi_critica_sintetica",
        "analisi_bibliografica_completa",
        "analisi_empirica_sperimentale",
        "analisi_implicazioni",
        "analisi_innovazione_metodologica",
        "analisi_validita_statistica",
        "analisi_applicabilita_pratica",
        "analisi_limiti_criticita",
        "analisi_posizionamento_teorico",
    ),
    "dottorato": (
        "analisi_originalita_scientifica",
        "analisi_metodologica_frontiera",
        "analisi_stato_arte_internazionale",
        "analisi_framework_teorico",
        "analisi_empirica_avanzata",
        "analisi_critica_profonda",
        "analisi_impatto_scientifico",
        "analisi_riproducibilita",
        "analisi_standard_internazionali",
        "analisi_significativita_statistica",
        "analisi_etica_ricerca",
        "analisi_sostenibilita_metodologica",
        "analisi_interdisciplinarieta",
        "analisi_scalabilita_risultati",
        "analisi_pubblicabilita_internazionale",
        "analisi_gap_conoscenza_colmato",
    ),
}

_DEFAULT_BY_LEVEL = {
    "triennale": "analisi_contenuti",
    "magistrale": "analisi_contenuti_specialistici",
    "dottorato": "analisi_originalita_scientifica",
}

SYSTEM_PROMPT = (
    "You are an expert academic reviewer. Produce rigorous, well-structured analyses "
    "that follow the specialised instructions exactly."
)

_LEVEL_GUIDELINES = {
    "triennale": (
        "Apply undergraduate standards: focus on understanding and correct application "
        "of the core concepts."
    ),
    "magistrale": (
        "Apply advanced criteria: weigh critical depth and the ability to synthesise "
        "specialist material."
    ),
    "dottorato": (
        "Apply international research standards: weigh originality, methodological "
        "rigour and contribution to knowledge."
    ),
}

_INSTRUCTIONS = {
    "analisi_strutturale": (
        "Evaluate the logical organisation of the work:\n"
        "- Structural coherence: is the sequence of arguments logical?\n"
        "- Clarity: are ideas presented in an orderly way?\n"
        "- Balance: are the sections proportionate?\n"
        "- Transitions: how are chapters and paragraphs connected?"
    ),
    "analisi_metodologica": (
        "Evaluate the methodological approach:\n"
        "- Fitness of the method for the stated objectives.\n"
        "- Clarity of the method's description.\n"
        "- Practical application and its limits.\n"
        "- Justification of methodological choices."
    ),
    "analisi_contenuti": (
        "Evaluate command of the subject and quality of the content:\n"
        "- Accuracy of the information presented.\n"
        "- Completeness of the treatment.\n"
        "- Depth and pertinence to the objectives.\n"
        "- Currency of the sources used."
    ),
}

# Typographic characters some batch endpoints reject inside JSONL payloads.
_REPLACEMENTS = (
    ("‘", "'"),
    ("’", "'"),
    ("“", '"'),
    ("”", '"'),
    ("–", "-"),
    ("—", "-"),
    ("…", "..."),
    (" ", " "),
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_MULTI_SPACE = re.compile(r"[ ]{2,}")


def sanitize_text(text: str) -> str:
    """Normalise quotes, dashes and whitespace and strip control characters."""
    for old, new in _REPLACEMENTS:
        text = text.replace(old, new)
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "    ")
    text = _CONTROL_CHARS.sub(" ", text)
    return _MULTI_SPACE.sub(" ", text).strip()


def valid_analysis_types(level: str | None) -> tuple[str, ...]:
    """Analysis types accepted for *level*; projects without a known level accept any of them."""
    known = ANALYSIS_TYPES.get((level or "").lower())
    if known is not None:
        return known
    return tuple(t for types in ANALYSIS_TYPES.values() for t in types)


def default_analysis_type(level: str | None) -> str:
    return _DEFAULT_BY_LEVEL.get((level or "").lower(), DEFAULT_ANALYSIS_TYPE)


def analysis_label(analysis_type: str) -> str:
    """``analisi_contenuti`` -> ``Analisi Contenuti``."""
    return analysis_type.replace("_", " ").title()


def _instructions(analysis_type: str, level: str | None, faculty: str | None) -> str:
    specific = _INSTRUCTIONS.get(analysis_type)
    if specific is None:
        specific = (
            f'Carry out a complete "{analysis_label(analysis_type)}" analysis to the '
            f"highest academic standards for {faculty or 'the field'}."
        )
    guideline = _LEVEL_GUIDELINES.get((level or "").lower())
    return specific if guideline is None else f"{specific}\n\n{guideline}"


def build_prompt(project: Project, chunk: Chunk, analysis_type: str) -> str:
    """Return the user prompt for analysing *chunk* within *project*."""
    text = sanitize_text(chunk.content)
    level = (project.level or "n/a").upper()
    return (
        "ACADEMIC CONTEXT:\n"
        f"- Project: {project.title}\n"
        f"- Faculty: {project.faculty or 'n/a'}\n"
        f"- Topic: {project.topic or 'n/a'}\n"
        f"- Level: {level}\n"
        f"- Section: {chunk.title}\n"
        f'- Requested analysis: "{analysis_label(analysis_type)}"\n'
        f"- Input: {len(text)} characters\n\n"
        "SPECIALISED INSTRUCTIONS:\n"
        f"{_instructions(analysis_type, project.level, project.faculty)}\n\n"
        "Structure the analysis as: general framing, specialised analysis with precise "
        "references to the text, critical evaluation (strengths, weaknesses, suggestions) "
        "and conclusions. Base it exclusively on the material below.\n\n"
        "MATERIAL TO ANALYSE:\n---\n"
        f"{text}\n---"
    )
