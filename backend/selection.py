import random
from typing import Iterable, List, Optional

from backend.models import Contractor, Lead

# intake form values that differ from the tags contractors pick
AREA_ALIASES = {"walls": "wall"}


def normalize_areas(areas: Iterable[str]) -> List[str]:
    out = []
    for area in areas:
        area = area.strip().lower()
        if area and area != "other":
            out.append(AREA_ALIASES.get(area, area))
    return out


def matches_lead(contractor: Contractor, lead: Lead) -> bool:
    if contractor.status != "approved":
        return False
    wanted = set(normalize_areas(lead.areas_needed))
    offered = set(normalize_areas(contractor.service_areas))
    # no declared areas on either side matches anything
    if not wanted or not offered:
        return True
    return bool(wanted & offered)


def select_candidates(
    contractors: List[Contractor],
    lead: Lead,
    limit: int = 3,
    rng: Optional[random.Random] = None,
) -> List[Contractor]:
    """Pick up to ``limit`` approved, matching contractors at random."""
    rng = rng or random.Random()
    matching = [c for c in contractors if matches_lead(c, lead)]
    if limit <= 0 or not matching:
        return []
    return rng.sample(matching, min(limit, len(matching)))
