"""Domain keyness of a study corpus against a reference corpus.

Log-likelihood (Dunning's G2) scores how unexpected a domain's frequency in
the study corpus is given both corpora; the critical values 6.63 and 10.83
correspond to p < 0.01 and p < 0.001 at one degree of freedom.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from semantic_annotator.models import NOT_CLASSIFIED, ClassificationRecord
from semantic_annotator.tagset import level_code

LL_HIGH = 10.83
LL_MEDIUM = 6.63


class Significance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True, slots=True)
class KeynessResult:
    domain_code: str
    study_count: int
    reference_count: int
    log_likelihood: float
    mutual_information: float
    significance: Significance

    @property
    def overused(self) -> bool:
        """True when the domain is relatively more frequent in the study corpus."""
        return self.mutual_information > 0


def log_likelihood(a: int, b: int, total_a: int, total_b: int) -> float:
    """G2 for a count ``a`` of ``total_a`` against ``b`` of ``total_b``."""
    total = total_a + total_b
    if total == 0 or a + b == 0:
        return 0.0
    expected_a = total_a * (a + b) / total
    expected_b = total_b * (a + b) / total
    ll = 0.0
    if a > 0:
        ll += 2 * a * math.log(a / expected_a)
    if b > 0:
        ll += 2 * b * math.log(b / expected_b)
    return ll


def mutual_information(a: int, b: int, total_a: int, total_b: int) -> float:
    """log2 of the ratio of relative frequencies; 0 when either is zero."""
    if not (a and b and total_a and total_b):
        return 0.0
    return math.log2((a / total_a) / (b / total_b))


def significance(ll: float) -> Significance:
    if ll > LL_HIGH:
        return Significance.HIGH
    if ll > LL_MEDIUM:
        return Significance.MEDIUM
    return Significance.LOW


def compute_keyness(
    study: Mapping[str, int],
    reference: Mapping[str, int],
) -> list[KeynessResult]:
    """Keyness of every domain in ``study``, highest log-likelihood first."""
    total_study = sum(study.values())
    total_reference = sum(reference.values())
    results = []
    for code, count in study.items():
        ref_count = reference.get(code, 0)
        ll = log_likelihood(count, ref_count, total_study, total_reference)
        results.append(KeynessResult(
            domain_code=code,
            study_count=count,
            reference_count=ref_count,
            log_likelihood=round(ll, 2),
            mutual_information=round(
                mutual_information(count, ref_count, total_study, total_reference), 3
            ),
            significance=significance(ll),
        ))
    results.sort(key=lambda r: (-r.log_likelihood, r.domain_code))
    return results


def domain_frequencies(
    records: Iterable[ClassificationRecord | tuple[str, str]],
    level: int = 1,
) -> Counter[str]:
    """Count word tokens per domain code truncated to ``level``.

    Accepts records or ``(word, domain_code)`` pairs. NC stays its own
    bucket and is never truncated.
    """
    counts: Counter[str] = Counter()
    for item in records:
        code = item.domain_code if isinstance(item, ClassificationRecord) else item[1]
        if not code or code == NOT_CLASSIFIED:
            counts[NOT_CLASSIFIED] += 1
        else:
            counts[level_code(code, level)] += 1
    return counts
