from __future__ import annotations

import re
from typing import Any

from civic_intel.domain.states import CATEGORY_ORDER, Category


CATEGORY_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.POTHOLE: ("pothole", "potholes", "crater in road", "gaddha"),
    Category.ROAD_DAMAGE: ("road damage", "damaged road", "broken road", "cracked road", "road caved", "road surface"),
    Category.FOOTPATH_DAMAGE: ("footpath", "sidewalk", "pavement broken", "broken tiles"),
    Category.STREETLIGHT: ("streetlight", "street light", "lamp post", "street lamp"),
    Category.TRAFFIC_SIGNAL: ("traffic signal", "traffic light", "signal not working"),
    Category.ILLEGAL_PARKING: ("illegal parking", "parked on footpath", "wrong parking", "blocking driveway"),
    Category.GARBAGE_COLLECTION: ("garbage", "trash", "waste not collected", "dustbin", "litter"),
    Category.ILLEGAL_DUMPING: ("dumping", "dumped", "debris dumped", "construction waste"),
    Category.WATER_SUPPLY: ("no water", "water supply", "low pressure", "water cut", "tap dry"),
    Category.WATER_LEAKAGE: ("water leak", "pipe burst", "leaking pipe", "pipeline leak", "burst main"),
    Category.SEWAGE_OVERFLOW: ("sewage", "sewer overflow", "manhole overflow", "gutter overflow"),
    Category.DRAINAGE_BLOCKAGE: ("drain blocked", "clogged drain", "blocked drain", "drainage"),
    Category.FLOODING: ("flood", "flooded", "waterlogging", "water logging", "inundated"),
    Category.ELECTRICITY_OUTAGE: ("power cut", "power outage", "no electricity", "blackout", "transformer"),
    Category.EXPOSED_WIRING: ("exposed wire", "live wire", "hanging wire", "sparking", "open junction box"),
    Category.FALLEN_TREE: ("fallen tree", "tree fell", "uprooted", "tree branch"),
    Category.PARK_MAINTENANCE: ("park", "playground", "garden", "broken swing"),
    Category.NOISE_POLLUTION: ("noise", "loudspeaker", "loud music", "honking"),
    Category.AIR_POLLUTION: ("smoke", "burning waste", "air pollution", "dust pollution", "fumes"),
    Category.STRAY_ANIMALS: ("stray dog", "stray dogs", "stray cattle", "stray animal", "monkey menace"),
    Category.MOSQUITO_BREEDING: ("mosquito", "stagnant water", "dengue", "larvae"),
    Category.PUBLIC_TOILET: ("public toilet", "toilet", "urinal", "washroom"),
    Category.ENCROACHMENT: ("encroachment", "encroached", "illegal shop", "illegal construction"),
    Category.BUILDING_HAZARD: ("building collapse", "cracked wall", "dilapidated", "unsafe building", "falling plaster"),
}

# Phrases in free text that become severity indicators, with their canonical token.
SEVERITY_TERMS: dict[str, str] = {
    "accident": "accident",
    "injury": "injury",
    "injured": "injury",
    "dangerous": "dangerous",
    "urgent": "urgent",
    "children": "children_at_risk",
    "school": "near_school",
    "hospital": "near_hospital",
    "blocked": "blocked_access",
    "overflowing": "overflowing",
    "collapsed": "collapse",
    "collapse": "collapse",
    "sparking": "sparking",
    "fire": "fire",
    "open manhole": "open_manhole",
    "sinkhole": "sinkhole",
    "gas leak": "gas_leak",
    "electrocution": "electrocution",
    "live wire": "exposed_wire",
    "exposed wire": "exposed_wire",
    "flooded": "flooding",
}

HAZARD_INDICATORS = frozenset(
    {
        "unsafe_content",
        "fire",
        "exposed_wire",
        "sparking",
        "electrocution",
        "gas_leak",
        "sinkhole",
        "open_manhole",
        "collapse",
        "flooding",
        "injury",
    }
)

INFRASTRUCTURE_VOCAB = frozenset(
    {
        "road",
        "bridge",
        "footpath",
        "sidewalk",
        "streetlight",
        "traffic_light",
        "manhole",
        "drain",
        "pipe",
        "pipeline",
        "water_main",
        "electric_pole",
        "transformer",
        "power_line",
        "tree",
        "building",
        "wall",
        "toilet",
        "bus_stop",
        "dustbin",
    }
)


def normalize_token(value: Any) -> str:
    return re.sub(r"[\s\-]+", "_", str(value or "").strip().lower())


def is_hazard_indicator(indicator: str) -> bool:
    token = normalize_token(indicator)
    return token in HAZARD_INDICATORS or token.startswith("safety:")


def extract_severity_terms(text: str) -> list[str]:
    t = f" {str(text or '').lower()} "
    found = {token for phrase, token in SEVERITY_TERMS.items() if phrase in t}
    return sorted(found)


def keyword_scores(text: str) -> dict[Category, int]:
    t = str(text or "").lower()
    scores: dict[Category, int] = {}
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for k in keywords if k in t)
        if hits:
            scores[category] = hits
    return scores


def keyword_classify(text: str) -> dict[str, Any]:
    """Deterministic classification over free text, shaped like an LLM response."""
    scores = keyword_scores(text)
    summary = " ".join(str(text or "").split())[:200]
    if not scores:
        return {
            "category": Category.OTHER.value,
            "confidence": 0.3,
            "summary": summary,
            "entities": {"severity_indicators": extract_severity_terms(text)},
            "suggested_priority": 4,
            "alternative_categories": [],
        }

    ranked = sorted(scores.items(), key=lambda kv: (-kv[1], CATEGORY_ORDER[kv[0]]))
    best, hits = ranked[0]
    confidence = round(min(0.9, 0.6 + 0.1 * (hits - 1)), 3)
    alternatives = [
        {"category": cat.value, "confidence": round(min(0.85, 0.4 + 0.1 * (n - 1)), 3)}
        for cat, n in ranked[1:3]
    ]
    severity = extract_severity_terms(text)
    return {
        "category": best.value,
        "confidence": confidence,
        "summary": summary,
        "entities": {"severity_indicators": severity},
        "suggested_priority": min(10, 5 + len(severity)),
        "alternative_categories": alternatives,
    }


def labels_corroborate(category: Category, labels: list[str]) -> bool:
    keywords = CATEGORY_KEYWORDS.get(category, ())
    blob = " ".join(str(label).lower().replace("_", " ") for label in labels)
    return any(k in blob for k in keywords) or category.value.lower().replace("_", " ") in blob
