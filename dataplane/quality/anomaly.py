"""
Statistical anomaly detection over a table profile.
"""

import logging
from typing import List

from dataplane.quality.models import AnomalyFinding, AnomalyType, TableProfile
from dataplane.quality.profile import SIGMA

logger = logging.getLogger(__name__)

MAIN_PATTERN_RATIO = 0.8


def detect_outliers(profile: TableProfile) -> List[AnomalyFinding]:
    """Numeric columns with rows further than 3 standard deviations from the mean."""
    findings = []
    for column, numeric in profile.numeric.items():
        if numeric.outlier_count == 0:
            continue
        findings.append(AnomalyFinding(
            anomaly_type=AnomalyType.OUTLIER,
            table=profile.table,
            column=column,
            description=f"Found {numeric.outlier_count} statistical outliers (>{SIGMA}σ from mean)",
            confidence=0.8,
            sample_values=list(numeric.outlier_samples),
        ))
    return findings


def detect_pattern_breaks(profile: TableProfile) -> List[AnomalyFinding]:
    """String columns without a dominant value length."""
    findings = []
    for column, lengths in profile.string_lengths.items():
        total = sum(lengths.values())
        if not total:
            continue
        main_length, main_count = max(lengths.items(), key=lambda item: item[1])
        share = main_count / total
        if share < MAIN_PATTERN_RATIO and len(lengths) > 2:
            findings.append(AnomalyFinding(
                anomaly_type=AnomalyType.PATTERN_BREAK,
                table=profile.table,
                column=column,
                description=(
                    f"Inconsistent string length patterns detected "
                    f"(main pattern: {main_length} chars, {round(share * 100)}%)"
                ),
                confidence=1 - share,
            ))
    return findings


def detect_anomalies(profile: TableProfile) -> List[AnomalyFinding]:
    findings = detect_outliers(profile) + detect_pattern_breaks(profile)
    logger.info(f"Anomaly detection on {profile.table} found {len(findings)} anomaly(ies)")
    return findings
