"""Lexicon-based domain entity extraction.

Entities bias cognitive-load scoring toward the moments a specialised
lecture is actually about: clinical terms in a medical lecture, formal
constructs in a STEM lecture, schools and arguments in the humanities.
"""

import re
from collections import Counter
from dataclasses import dataclass

from lecturepulse.models import DomainProfile


@dataclass(frozen=True)
class Entity:
    name: str
    entity_type: str


# entity_type -> terms
MEDICAL_LEXICON = {
    "pathology": (
        "hypertension", "diabetes", "sepsis", "pneumonia", "infarction", "stroke",
        "carcinoma", "syndrome", "anemia", "tumor", "fibrosis", "ischemia",
        "pheochromocytoma", "cirrhosis", "thrombosis", "embolism",
    ),
    "treatment": (
        "antibiotic", "insulin", "surgery", "resection", "chemotherapy",
        "beta blocker", "ace inhibitor", "anticoagulant", "dialysis", "transplant",
    ),
    "mechanism": (
        "pathophysiology", "receptor", "inhibition", "mechanism of action",
        "catecholamine", "cytokine", "enzyme", "pathway", "metabolism",
    ),
    "finding": (
        "tachycardia", "bradycardia", "murmur", "edema", "fever", "jaundice",
        "lab value", "biopsy", "imaging", "elevated", "sign", "symptom",
    ),
    "risk_factor": (
        "smoking", "obesity", "family history", "genetic", "comorbidity", "exposure",
    ),
}

# Suffixes that mark clinical vocabulary the lexicon does not list
MEDICAL_SUFFIXES = {
    "pathology": ("itis", "oma", "emia", "osis", "pathy"),
    "treatment": ("mab", "pril", "olol", "statin", "cillin", "sartan", "ectomy"),
}

STEM_LEXICON = {
    "formal": (
        "theorem", "lemma", "proof", "equation", "derivative", "integral",
        "matrix", "vector", "eigenvalue", "function", "limit", "probability",
    ),
    "process": (
        "algorithm", "recursion", "complexity", "iteration", "reaction",
        "equilibrium", "entropy", "momentum", "velocity", "acceleration",
    ),
}

HUMANITIES_LEXICON = {
    "framework": (
        "theory", "ideology", "enlightenment", "modernism", "postmodernism",
        "existentialism", "structuralism", "romanticism", "empiricism",
    ),
    "argument": (
        "thesis", "argument", "premise", "counterargument", "critique",
        "interpretation", "narrative", "rhetoric", "causation", "revolution",
    ),
}

LEXICONS = {
    DomainProfile.MEDICAL: MEDICAL_LEXICON,
    DomainProfile.STEM: STEM_LEXICON,
    DomainProfile.HUMANITIES: HUMANITIES_LEXICON,
}

_WORD_RE = re.compile(r"[a-z][a-z\-]+")


def _term_pattern(term: str) -> re.Pattern:
    # tolerate simple plurals
    return re.compile(rf"\b{re.escape(term)}(s|es)?\b")


_PATTERNS = {
    profile: {
        etype: [(term, _term_pattern(term)) for term in terms]
        for etype, terms in lexicon.items()
    }
    for profile, lexicon in LEXICONS.items()
}


def extract_entities(text: str, profile: DomainProfile) -> list[Entity]:
    """Distinct entities mentioned in *text*, in lexicon order."""
    lowered = text.lower()
    found: list[Entity] = []
    seen: set[str] = set()
    for etype, patterns in _PATTERNS[profile].items():
        for term, pattern in patterns:
            if term not in seen and pattern.search(lowered):
                seen.add(term)
                found.append(Entity(term, etype))

    if profile is DomainProfile.MEDICAL:
        for word in _WORD_RE.findall(lowered):
            if word in seen or len(word) < 6:
                continue
            for etype, suffixes in MEDICAL_SUFFIXES.items():
                if word.endswith(suffixes):
                    seen.add(word)
                    found.append(Entity(word, etype))
                    break
    return found


def key_entities(segments: list[str], profile: DomainProfile, top: int = 15) -> set[str]:
    """Most frequently mentioned entity names across a whole lecture."""
    counts: Counter[str] = Counter()
    for text in segments:
        counts.update(e.name for e in extract_entities(text, profile))
    return {name for name, _ in counts.most_common(top)}
