"""
opsrecall Search Eval -- retrieval quality over curated queries.

Each case pairs a query with terms that relevant results should contain.
Every case is run through RetrievalEngine.search_knowledge in each mode
(lexical BM25 and hybrid by default) and scored with Recall@5,
Precision@5 and reciprocal rank. Evaluation searches are not counted as
retrievals, so running the suite leaves promotion stats untouched.

Usage:
    summaries = run_search_eval(engine)
    print(format_eval_report(summaries["hybrid"]))
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

from opsrecall.engine import SEARCH_MODES, RetrievalEngine

logger = logging.getLogger("opsrecall.search_eval")

EVAL_TOP_K = 5
DEFAULT_EVAL_MODES = ("lexical", "hybrid")
_PREVIEW_CHARS = 80


@dataclass
class EvalCase:
    query: str
    expected_terms: List[str]
    category: str


@dataclass
class EvalResult:
    query: str
    category: str
    recall5: float
    precision5: float
    reciprocal_rank: float
    top_results: List[str] = field(default_factory=list)


@dataclass
class CategoryMetrics:
    count: int = 0
    avg_recall5: float = 0.0
    avg_mrr: float = 0.0


@dataclass
class EvalSummary:
    config: str
    case_count: int = 0
    avg_recall5: float = 0.0
    avg_precision5: float = 0.0
    avg_mrr: float = 0.0
    by_category: Dict[str, CategoryMetrics] = field(default_factory=dict)
    results: List[EvalResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


EVAL_CASES: List[EvalCase] = [
    # Security
    EvalCase("CSRF protection", ["csrf", "header", "token"], "security"),
    EvalCase("secrets detection before commit", ["secret", "api key", "commit"], "security"),
    EvalCase("OAuth login", ["oauth", "login", "auth"], "security"),
    # Database
    EvalCase("enum migration", ["enum", "migration", "transaction"], "database"),
    EvalCase("nullable foreign key backfill", ["nullable", "backfill", "migration"], "database"),
    EvalCase("production database migrations", ["migration", "database", "batch"], "database"),
    # Reliability
    EvalCase("retry flaky network calls", ["retry", "backoff", "network"], "reliability"),
    EvalCase("feature flag rollout", ["flag", "ramp", "rollout"], "reliability"),
    # Workflow
    EvalCase("feature branch workflow", ["branch", "main", "feature", "push"], "workflow"),
    EvalCase("sprint tracking lifecycle", ["sprint", "progress", "complete"], "workflow"),
    EvalCase("sprint review timebox", ["sprint", "review", "timebox"], "workflow"),
    # Architecture
    EvalCase("SQLite versus Postgres", ["sqlite", "postgres"], "architecture"),
    EvalCase("model routing cascade", ["model", "routing", "cascade"], "architecture"),
    # Agents
    EvalCase("parallel code review", ["parallel", "review", "agent"], "agent"),
    EvalCase("file ownership conflicts", ["file", "ownership", "conflict"], "agent"),
    # Estimation
    EvalCase("sprint time estimate accuracy", ["estimate", "actual", "time"], "estimation"),
]


def _contains_any(text: str, expected_terms: Sequence[str]) -> bool:
    lower = text.lower()
    return any(term.lower() in lower for term in expected_terms)


def evaluate_case(engine: RetrievalEngine, case: EvalCase, mode: str) -> EvalResult:
    """Score one case: expected-term recall, relevant-hit precision, first-hit rank."""
    hits = engine.search_knowledge(case.query, limit=EVAL_TOP_K, mode=mode, track=False)
    texts = [hit.text for hit in hits]

    joined = " ".join(texts).lower()
    found = [term for term in case.expected_terms if term.lower() in joined]
    recall5 = len(found) / len(case.expected_terms) if case.expected_terms else 0.0

    relevant = [_contains_any(text, case.expected_terms) for text in texts]
    precision5 = sum(relevant) / len(texts) if texts else 0.0

    reciprocal_rank = 0.0
    for rank, is_relevant in enumerate(relevant, start=1):
        if is_relevant:
            reciprocal_rank = 1.0 / rank
            break

    return EvalResult(
        query=case.query,
        category=case.category,
        recall5=round(recall5, 2),
        precision5=round(precision5, 2),
        reciprocal_rank=round(reciprocal_rank, 2),
        top_results=[text[:_PREVIEW_CHARS] for text in texts],
    )


def _summarize(label: str, results: List[EvalResult]) -> EvalSummary:
    summary = EvalSummary(config=label, case_count=len(results), results=results)
    if not results:
        return summary

    n = len(results)
    summary.avg_recall5 = round(sum(r.recall5 for r in results) / n, 2)
    summary.avg_precision5 = round(sum(r.precision5 for r in results) / n, 2)
    summary.avg_mrr = round(sum(r.reciprocal_rank for r in results) / n, 2)

    totals: Dict[str, List[float]] = {}
    for r in results:
        bucket = totals.setdefault(r.category, [0, 0.0, 0.0])
        bucket[0] += 1
        bucket[1] += r.recall5
        bucket[2] += r.reciprocal_rank
    summary.by_category = {
        category: CategoryMetrics(
            count=int(count),
            avg_recall5=round(recall / count, 2),
            avg_mrr=round(mrr / count, 2),
        )
        for category, (count, recall, mrr) in totals.items()
    }
    return summary


def run_search_eval(
    engine: RetrievalEngine,
    cases: Optional[Sequence[EvalCase]] = None,
    modes: Sequence[str] = DEFAULT_EVAL_MODES,
) -> Dict[str, EvalSummary]:
    """Run every case in every mode; returns one summary per mode.

    An empty knowledge index yields summaries with ``case_count == 0``.
    """
    for mode in modes:
        if mode not in SEARCH_MODES:
            raise ValueError(f"mode must be one of {', '.join(SEARCH_MODES)}")
    cases = list(EVAL_CASES if cases is None else cases)

    if not engine.knowledge.is_available():
        logger.warning("Search eval skipped: knowledge index is empty")
        return {mode: EvalSummary(config=mode) for mode in modes}

    summaries = {}
    for mode in modes:
        summary = _summarize(mode, [evaluate_case(engine, case, mode) for case in cases])
        logger.info("Search eval complete: config=%s cases=%d recall5=%.2f mrr=%.2f",
                    mode, summary.case_count, summary.avg_recall5, summary.avg_mrr)
        summaries[mode] = summary
    return summaries


def format_eval_report(summary: EvalSummary) -> str:
    lines = [
        f"## Search Eval: {summary.config}",
        "",
        f"**Cases:** {summary.case_count}",
        f"**Avg Recall@5:** {summary.avg_recall5 * 100:.0f}%",
        f"**Avg Precision@5:** {summary.avg_precision5 * 100:.0f}%",
        f"**Avg MRR:** {summary.avg_mrr:.2f}",
        "",
        "### By Category",
    ]
    for category, metrics in summary.by_category.items():
        lines.append(
            f"- **{category}** ({metrics.count}): Recall {metrics.avg_recall5 * 100:.0f}%, "
            f"MRR {metrics.avg_mrr:.2f}"
        )

    worst = [r for r in sorted(summary.results, key=lambda r: r.reciprocal_rank)[:5] if r.reciprocal_rank < 0.5]
    if worst:
        lines += ["", "### Needs Improvement (MRR < 0.5)"]
        for r in worst:
            lines.append(f'- "{r.query}": MRR {r.reciprocal_rank}, Recall {r.recall5 * 100:.0f}%')
    return "\n".join(lines) + "\n"
