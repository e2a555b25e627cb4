"""
Scoring engine — middle score + qualification tier from bureau scores.

Pure functions; no persistence. Tier cutpoints come from tier_config.yaml
next to this module, with a hardcoded fallback.

Tiering policy: the middle (median) score is only defined when all three
bureaus returned a score. With fewer, the tier is computed from the MAXIMUM
available score, which is lenient on partial data.
"""
import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable

import yaml

from prescreen.config import BUREAUS

logger = logging.getLogger('pipeline.scoring')

QUALIFYING_TIERS = ('tier_1', 'tier_2')


# ── Tier config (YAML with hardcoded fallback) ───────────────────────────────

_tier_config = None


def _default_config():
    """Hardcoded fallback if YAML is missing."""
    return {
        'version': 'default',
        'tiers': [
            {'name': 'tier_1', 'min_score': 620},
            {'name': 'tier_2', 'min_score': 580},
            {'name': 'tier_3', 'min_score': 500},
        ],
        'below_tier': 'below',
        'unscored_tier': 'pending',
    }


def load_tier_config():
    """Load tier cutpoints from YAML, with in-memory cache and hardcoded fallback."""
    global _tier_config
    if _tier_config is not None:
        return _tier_config

    config_path = os.path.join(os.path.dirname(__file__), 'tier_config.yaml')
    try:
        with open(config_path, 'r') as f:
            _tier_config = yaml.safe_load(f)
        logger.info("Tier config loaded from YAML (version=%s)", _tier_config.get('version', '?'))
    except Exception as e:
        logger.warning("Tier config YAML not found (%s), using defaults", e)
        _tier_config = _default_config()

    return _tier_config


# ── Score math ───────────────────────────────────────────────────────────────

def _valid_scores(scores: Iterable[Optional[float]]) -> List[float]:
    return [s for s in scores if s is not None and s == s]  # s == s drops NaN


def compute_middle_score(scores: Iterable[Optional[float]]) -> Optional[float]:
    """
    Median of the three bureau scores.

    Returns None unless all three are present. A middle score is never
    guessed from partial data.
    """
    valid = _valid_scores(scores)
    if len(valid) < 3:
        return None
    valid.sort()
    return valid[1]


def compute_tier(score: Optional[float], config: Dict = None) -> str:
    """
    Threshold lookup: highest tier whose min_score the score reaches.

    Defaults: 620+ tier_1, 580-619 tier_2, 500-579 tier_3, <500 below,
    None pending.
    """
    config = config or load_tier_config()
    if score is None:
        return config.get('unscored_tier', 'pending')

    tiers = sorted(config.get('tiers', []), key=lambda t: t['min_score'], reverse=True)
    for tier in tiers:
        if score >= tier['min_score']:
            return tier['name']
    return config.get('below_tier', 'below')


def is_qualified_tier(tier: str) -> bool:
    return tier in QUALIFYING_TIERS


def tier_input_score(scores: Iterable[Optional[float]]) -> Optional[float]:
    """Score used for tiering: middle score, else max of what is available."""
    scores = list(scores)
    middle = compute_middle_score(scores)
    if middle is not None:
        return middle
    valid = _valid_scores(scores)
    return max(valid) if valid else None


@dataclass
class ScoreSummary:
    middle_score: Optional[float]
    tier: str
    is_qualified: bool


def score_lead(scores: Dict[str, Optional[float]], config: Dict = None) -> ScoreSummary:
    """Derive middle score + tier from a {bureau: score} mapping."""
    ordered = [scores.get(bureau) for bureau in BUREAUS]
    middle = compute_middle_score(ordered)
    tier = compute_tier(tier_input_score(ordered), config)
    return ScoreSummary(middle_score=middle, tier=tier, is_qualified=is_qualified_tier(tier))


def extract_bureau_scores(outputs: Optional[Dict]) -> Dict[str, Optional[float]]:
    """Pull credit_score per bureau out of an Altair outputs map."""
    outputs = outputs or {}
    scores = {}
    for bureau in BUREAUS:
        output = outputs.get(bureau)
        scores[bureau] = output.get('credit_score') if isinstance(output, dict) else None
    return scores


def scores_from_results(results) -> Dict[str, Optional[float]]:
    """Build a {bureau: score} mapping from Result rows on file."""
    scores = {bureau: None for bureau in BUREAUS}
    for result in results:
        if result.bureau in scores:
            scores[result.bureau] = result.credit_score
    return scores
