from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Sequence

import numpy as np

from amplidenoise.core.alignment import (
    BAND_SIZE,
    DEFAULT_GAP_PENALTY,
    Substitutions,
    as_matrix,
    compare_sequences,
)
from amplidenoise.core.alphabet import normalize_sequence, validate_sequences
from amplidenoise.core.kmer import KMER_SIZE, MAX_KMER_SIZE, kmer_dist, kmer_vector
from amplidenoise.core.likelihood import compute_lambda, log_error_matrix, validate_error_matrix
from amplidenoise.core.partition import Partition
from amplidenoise.core.significance import (
    OMEGA_A,
    OMEGA_S,
    BudCandidate,
    abundance_pvalue,
    most_significant,
    singleton_pvalue,
)
from amplidenoise.exceptions import AmpliDenoiseUsageError, PartitionInvariantError
from amplidenoise.logging import get_logger
from amplidenoise.utils.validation import as_scalar, validate_abundances

logger = get_logger("amplidenoise.engine")

KDIST_CUTOFF = 0.42


class EngineState(str, Enum):
    INITIALIZED = "initialized"
    FAMILIES_UPDATED = "families_updated"
    PVALUES_UPDATED = "pvalues_updated"
    BUD_CREATED = "bud_created"
    CONVERGED = "converged"


@dataclass(frozen=True, slots=True)
class EngineSettings:
    gap_penalty: float = DEFAULT_GAP_PENALTY
    band_size: int = BAND_SIZE
    use_kmers: bool = True
    kdist_cutoff: float = KDIST_CUTOFF
    omega_a: float = OMEGA_A
    use_singletons: bool = False
    omega_s: float = OMEGA_S
    kmer_size: int = KMER_SIZE
    threads: int = 1


@dataclass(frozen=True, slots=True)
class RoundSummary:
    round: int
    state: EngineState
    new_cluster: int
    n_clusters: int
    min_pvalue: float | None


@dataclass(frozen=True, slots=True)
class Genotype:
    sequence: str
    abundance: int
    n_uniques: int
    center: int


@dataclass(frozen=True, slots=True, eq=False)
class DenoiseResult:
    genotypes: list[Genotype]
    transitions: np.ndarray
    cluster_of: list[int]
    rounds: int
    alignments: int
    kmer_skips: int


@dataclass(slots=True)
class EngineContext:
    """Everything one engine run reads or mutates. Nothing here is shared between runs."""

    partition: Partition
    score: np.ndarray
    err: np.ndarray
    settings: EngineSettings
    log_err: np.ndarray = field(init=False)
    subs_cache: dict[tuple[str, str], Substitutions] = field(default_factory=dict)
    kmer_cache: dict[str, np.ndarray] = field(default_factory=dict)
    alignments: int = 0
    kmer_skips: int = 0
    min_pvalue: float | None = None

    def __post_init__(self) -> None:
        self.log_err = log_error_matrix(self.err)

    def substitutions(self, consensus: str, sequence: str) -> Substitutions:
        key = (consensus, sequence)
        cached = self.subs_cache.get(key)
        if cached is None:
            cached = compare_sequences(
                consensus,
                sequence,
                self.score,
                self.settings.gap_penalty,
                self.settings.band_size,
            )
            self.subs_cache[key] = cached
            self.alignments += 1
        return cached

    def kmers(self, sequence: str) -> np.ndarray:
        vector = self.kmer_cache.get(sequence)
        if vector is None:
            vector = kmer_vector(sequence, self.settings.kmer_size)
            self.kmer_cache[sequence] = vector
        return vector

    def lambda_of(self, consensus: str, sequence: str) -> float:
        return compute_lambda(self.substitutions(consensus, sequence), self.log_err)


def update_families(ctx: EngineContext) -> None:
    """Regroup raws into families and compute each family's lambda to its own cluster."""

    partition = ctx.partition
    partition.update_families()
    for family in partition.families:
        consensus = partition.clusters[family.cluster].consensus
        family.lambda_ = ctx.lambda_of(consensus, family.sequence)


def update_pvalues(ctx: EngineContext) -> None:
    partition = ctx.partition
    for family in partition.families:
        if partition.is_center_family(family):
            family.pvalue = 1.0
            family.singleton_pvalue = 1.0
            continue
        cluster_reads = partition.clusters[family.cluster].reads
        family.pvalue = abundance_pvalue(family.reads, family.lambda_, cluster_reads)
        if ctx.settings.use_singletons and family.reads == 1:
            family.singleton_pvalue = singleton_pvalue(family.lambda_, cluster_reads)
        else:
            family.singleton_pvalue = 1.0


def bud(ctx: EngineContext) -> int:
    """Split off the most significant family, returning the new cluster index or 0."""

    partition = ctx.partition
    candidates = [family for family in partition.families if not partition.is_center_family(family)]

    abundance_best = most_significant(
        BudCandidate(
            cluster_index=family.cluster,
            family_index=family.index,
            first_raw=family.first_raw,
            reads=family.reads,
            pvalue=family.pvalue,
        )
        for family in candidates
    )
    ctx.min_pvalue = abundance_best.pvalue if abundance_best is not None else None

    chosen: BudCandidate | None = None
    if abundance_best is not None and abundance_best.pvalue < ctx.settings.omega_a:
        chosen = abundance_best
    elif ctx.settings.use_singletons:
        singleton_best = most_significant(
            BudCandidate(
                cluster_index=family.cluster,
                family_index=family.index,
                first_raw=family.first_raw,
                reads=family.reads,
                pvalue=family.singleton_pvalue,
            )
            for family in candidates
            if family.reads == 1
        )
        if singleton_best is not None and singleton_best.pvalue < ctx.settings.omega_s:
            chosen = singleton_best

    if chosen is None:
        return 0

    new_index = partition.bud(chosen.family_index)
    logger.debug(
        "Budded family %d (%d reads, p=%.3g) from cluster %d into cluster %d.",
        chosen.family_index,
        chosen.reads,
        chosen.pvalue,
        chosen.cluster_index,
        new_index,
    )
    if partition.nclust > partition.distinct_sequences:
        raise PartitionInvariantError(
            f"{partition.nclust} clusters exceed {partition.distinct_sequences} distinct sequences."
        )
    return new_index


def update_consensus(ctx: EngineContext) -> None:
    ctx.partition.update_consensus()


@dataclass(slots=True)
class LambdaRow:
    values: list[float]
    computed: dict[tuple[str, str], Substitutions]
    skips: int


def _lambda_row(
    ctx: EngineContext,
    sequence: str,
    own_cluster: int,
    consensuses: Sequence[str],
) -> LambdaRow:
    # Reads shared state only; new alignments are handed back for the reduction step.
    settings = ctx.settings
    values: list[float] = []
    computed: dict[tuple[str, str], Substitutions] = {}
    skips = 0
    for cluster_index, consensus in enumerate(consensuses):
        if settings.use_kmers and cluster_index != own_cluster and consensus != sequence:
            distance = kmer_dist(
                ctx.kmer_cache[sequence],
                len(sequence),
                ctx.kmer_cache[consensus],
                len(consensus),
                settings.kmer_size,
            )
            if distance > settings.kdist_cutoff:
                values.append(0.0)
                skips += 1
                continue

        key = (consensus, sequence)
        subs = ctx.subs_cache.get(key)
        if subs is None:
            subs = computed.get(key)
        if subs is None:
            subs = compare_sequences(
                consensus,
                sequence,
                ctx.score,
                settings.gap_penalty,
                settings.band_size,
            )
            computed[key] = subs
        values.append(compute_lambda(subs, ctx.log_err))
    return LambdaRow(values=values, computed=computed, skips=skips)


def update_lambdas(ctx: EngineContext) -> list[list[float]]:
    """Lambda of every family against every cluster consensus, indexed [family][cluster].

    A family is always aligned to its own cluster; other clusters are skipped (lambda 0)
    when k-mer filtering is on and the k-mer distance exceeds the cutoff. Rows are
    independent and run on a thread pool when more than one thread is configured.
    """

    partition = ctx.partition
    consensuses = [cluster.consensus for cluster in partition.clusters]
    families = list(partition.families)
    if ctx.settings.use_kmers:
        for sequence in {*consensuses, *(family.sequence for family in families)}:
            ctx.kmers(sequence)

    def _row(family_index: int) -> LambdaRow:
        family = families[family_index]
        return _lambda_row(ctx, family.sequence, family.cluster, consensuses)

    if ctx.settings.threads > 1 and len(families) > 1:
        with ThreadPoolExecutor(max_workers=ctx.settings.threads) as pool:
            rows = list(pool.map(_row, range(len(families))))
    else:
        rows = [_row(idx) for idx in range(len(families))]

    table: list[list[float]] = []
    for row in rows:
        table.append(row.values)
        ctx.kmer_skips += row.skips
        for key, subs in row.computed.items():
            if key not in ctx.subs_cache:
                ctx.subs_cache[key] = subs
                ctx.alignments += 1
    return table


def shuffle(ctx: EngineContext, lambdas: list[list[float]]) -> int:
    """Move every non-defining family to the cluster under which its lambda is highest."""

    partition = ctx.partition
    moved = 0
    for family in partition.families:
        if partition.is_center_family(family):
            continue
        row = lambdas[family.index]
        current = family.cluster
        best = current
        for cluster_index, value in enumerate(row):
            if value > row[best]:
                best = cluster_index
        if best != current:
            partition.move_family(family.index, best)
            moved += 1
    if moved:
        logger.debug("Shuffle moved %d families.", moved)
    return moved


class DenoiseMachine:
    """Fixed-point iteration over the partition, expressed as explicit state transitions.

    Round 1 runs family update, p-value update and bud from the initial state; every
    later round first realigns and reassigns families after the previous bud.
    """

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.state = EngineState.INITIALIZED
        self.round = 0
        self.new_cluster = 0

    @property
    def partition(self) -> Partition:
        return self.ctx.partition

    def step(self) -> EngineState:
        ctx = self.ctx
        if self.state is EngineState.CONVERGED:
            return self.state

        if self.state is EngineState.BUD_CREATED:
            update_consensus(ctx)
            lambdas = update_lambdas(ctx)
            shuffle(ctx, lambdas)
            update_consensus(ctx)
            update_families(ctx)
            self.state = EngineState.FAMILIES_UPDATED
        elif self.state is EngineState.INITIALIZED:
            update_families(ctx)
            self.state = EngineState.FAMILIES_UPDATED
        elif self.state is EngineState.FAMILIES_UPDATED:
            update_pvalues(ctx)
            self.state = EngineState.PVALUES_UPDATED
        elif self.state is EngineState.PVALUES_UPDATED:
            self.round += 1
            self.new_cluster = bud(ctx)
            self.state = EngineState.BUD_CREATED if self.new_cluster else EngineState.CONVERGED
        return self.state

    def iter_rounds(self) -> Iterator[RoundSummary]:
        """Advance one round at a time, yielding after each bud decision."""

        while self.state is not EngineState.CONVERGED:
            while self.step() not in (EngineState.BUD_CREATED, EngineState.CONVERGED):
                pass
            summary = RoundSummary(
                round=self.round,
                state=self.state,
                new_cluster=self.new_cluster,
                n_clusters=self.partition.nclust,
                min_pvalue=self.ctx.min_pvalue,
            )
            logger.debug(
                "Round %d: %s, %d clusters.",
                summary.round,
                summary.state.value,
                summary.n_clusters,
                extra={
                    "round": summary.round,
                    "state": summary.state.value,
                    "n_clusters": summary.n_clusters,
                    "new_cluster": summary.new_cluster,
                    "min_pvalue": summary.min_pvalue,
                },
            )
            yield summary

    def run(self) -> DenoiseResult:
        for _ in self.iter_rounds():
            pass
        return self.result()

    def result(self) -> DenoiseResult:
        if self.state is not EngineState.CONVERGED:
            raise PartitionInvariantError("Results requested before the engine converged.")
        ctx = self.ctx
        partition = self.partition

        transitions = np.zeros((4, 4), dtype=np.int64)
        for family in partition.families:
            consensus = partition.clusters[family.cluster].consensus
            subs = ctx.substitutions(consensus, family.sequence)
            transitions += subs.transitions * family.reads

        genotypes = [
            Genotype(
                sequence=cluster.consensus,
                abundance=cluster.reads,
                n_uniques=sum(len(partition.families[idx].raws) for idx in cluster.families),
                center=cluster.center,
            )
            for cluster in partition.clusters
        ]
        return DenoiseResult(
            genotypes=genotypes,
            transitions=transitions,
            cluster_of=list(partition.raw_cluster),
            rounds=self.round,
            alignments=ctx.alignments,
            kmer_skips=ctx.kmer_skips,
        )


def build_context(
    seqs: Sequence[str],
    abundances: Sequence[Any],
    err: Any,
    score: Any,
    settings: EngineSettings,
) -> EngineContext:
    """Check every precondition, then build a fresh engine context."""

    if len(seqs) != len(abundances):
        raise AmpliDenoiseUsageError(
            f"Different input lengths: {len(seqs)} sequences, {len(abundances)} abundances."
        )
    if len(seqs) == 0:
        raise AmpliDenoiseUsageError("No sequences to denoise.")
    normalized = [normalize_sequence(seq) for seq in seqs]
    validate_sequences(normalized)
    counts = validate_abundances(abundances)
    score_matrix = as_matrix(score, label="Score matrix")
    err_matrix = validate_error_matrix(err)
    if not 0.0 <= settings.kdist_cutoff <= 1.0:
        raise AmpliDenoiseUsageError(f"k-mer distance cutoff must lie in [0, 1], got {settings.kdist_cutoff}.")
    if settings.threads < 1:
        raise AmpliDenoiseUsageError(f"threads must be >= 1, got {settings.threads}.")
    if not 1 <= settings.kmer_size <= MAX_KMER_SIZE:
        raise AmpliDenoiseUsageError(
            f"k-mer size must lie in 1..{MAX_KMER_SIZE}, got {settings.kmer_size}."
        )

    return EngineContext(
        partition=Partition.from_uniques(normalized, counts),
        score=score_matrix,
        err=err_matrix,
        settings=settings,
    )


def denoise_uniques(
    seqs: Sequence[str],
    abundances: Sequence[Any],
    err: Any,
    score: Any,
    gap: Any = DEFAULT_GAP_PENALTY,
    use_kmers: Any = True,
    kdist_cutoff: Any = KDIST_CUTOFF,
    omega_a: Any = OMEGA_A,
    use_singletons: Any = False,
    omega_s: Any = OMEGA_S,
    *,
    band_size: int = BAND_SIZE,
    kmer_size: int = KMER_SIZE,
    threads: int = 1,
) -> DenoiseResult:
    """Denoise unique sequences into genotypes with corrected abundances.

    All inputs are validated before any clustering starts; a failed check raises
    :class:`AmpliDenoiseUsageError` and nothing is computed.
    """

    settings = EngineSettings(
        gap_penalty=as_scalar(gap, label="Gap penalty"),
        band_size=band_size,
        use_kmers=as_scalar(use_kmers, label="use_kmers", kind=bool),
        kdist_cutoff=as_scalar(kdist_cutoff, label="Kdist cutoff"),
        omega_a=as_scalar(omega_a, label="OmegaA"),
        use_singletons=as_scalar(use_singletons, label="use_singletons", kind=bool),
        omega_s=as_scalar(omega_s, label="OmegaS"),
        kmer_size=kmer_size,
        threads=threads,
    )
    ctx = build_context(seqs, abundances, err, score, settings)
    machine = DenoiseMachine(ctx)
    result = machine.run()
    logger.info(
        "Denoised %d uniques into %d genotypes in %d rounds (%d alignments, %d k-mer skips).",
        len(seqs),
        len(result.genotypes),
        result.rounds,
        result.alignments,
        result.kmer_skips,
    )
    return result
