from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from amplidenoise.config import DenoiseConfig, merge_command_config
from amplidenoise.core.clustering import DenoiseMachine, DenoiseResult, build_context
from amplidenoise.core.likelihood import uniform_error_matrix
from amplidenoise.core.uniques import (
    FastaRecord,
    UniqueTable,
    load_uniques,
    matrix_rows,
    read_matrix_tsv,
    write_fasta_records,
)
from amplidenoise.exceptions import AmpliDenoiseError, AmpliDenoiseUsageError
from amplidenoise.logging import configure_logging, get_logger
from amplidenoise.manifest import create_run_manifest, finalize_manifest, write_manifest
from amplidenoise.paths import OutputLayout, create_output_layout
from amplidenoise.utils.io import write_json, write_tsv

app = typer.Typer(help="Denoise unique amplicon sequences into genotypes.")
console = Console()


def _print_plan(step_plan: list[str]) -> None:
    console.print("[bold]Denoise step plan[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def resolve_error_matrix(cfg: DenoiseConfig) -> np.ndarray:
    if cfg.err_path is not None:
        return read_matrix_tsv(cfg.err_path, "Error matrix")
    if cfg.error_matrix is not None:
        return np.asarray(cfg.error_matrix, dtype=float)
    if cfg.error_rate is not None:
        return uniform_error_matrix(cfg.error_rate)
    raise AmpliDenoiseUsageError("No error model given. Provide --err, --error-rate or `error_matrix` in the config.")


def write_denoise_outputs(
    *,
    layout: OutputLayout,
    table: UniqueTable,
    result: DenoiseResult,
    force: bool,
) -> list[Path]:
    genotype_rows = [
        [f"genotype_{idx + 1:04d}", genotype.abundance, genotype.n_uniques, table.labels[genotype.center], genotype.sequence]
        for idx, genotype in enumerate(result.genotypes)
    ]
    genotypes_tsv = write_tsv(
        layout.genotypes_tsv,
        ["genotype_id", "abundance", "n_uniques", "center_id", "sequence"],
        genotype_rows,
        force=force,
    )
    genotypes_fasta = write_fasta_records(
        layout.genotypes_fasta,
        (
            FastaRecord(header=f"{row[0]};size={row[1]}", sequence=str(row[4]))
            for row in genotype_rows
        ),
        force=force,
    )
    transitions_tsv = write_tsv(
        layout.transitions_tsv,
        ["true_base", "A", "C", "G", "T"],
        matrix_rows(result.transitions),
        force=force,
    )
    assignments_tsv = write_tsv(
        layout.assignments_tsv,
        ["unique_id", "abundance", "genotype_id"],
        (
            [label, abundance, genotype_rows[cluster][0]]
            for label, abundance, cluster in zip(table.labels, table.abundances, result.cluster_of, strict=True)
        ),
        force=force,
    )
    summary_json = write_json(
        layout.denoise_summary,
        {
            "n_uniques": len(table.sequences),
            "total_reads": table.total_reads,
            "n_genotypes": len(result.genotypes),
            "rounds": result.rounds,
            "alignments": result.alignments,
            "kmer_skips": result.kmer_skips,
            "transitions": result.transitions.tolist(),
        },
        force=force,
    )
    return [genotypes_tsv, genotypes_fasta, transitions_tsv, assignments_tsv, summary_json]


def run_denoise(
    *,
    config_path: Path | None,
    uniques: Path | None,
    err_path: Path | None,
    error_rate: float | None,
    gap_penalty: float | None,
    band_size: int | None,
    use_kmers: bool | None,
    kdist_cutoff: float | None,
    omega_a: float | None,
    use_singletons: bool | None,
    omega_s: float | None,
    outdir: Path | None,
    threads: int | None,
    dry_run: bool | None,
    force: bool | None,
    log_file: Path | None,
    verbose: bool | None,
    quiet: bool | None,
) -> int:
    try:
        cfg = merge_command_config(
            config_path=config_path,
            section="denoise",
            model_cls=DenoiseConfig,
            cli_overrides={
                "uniques": uniques,
                "err_path": err_path,
                "error_rate": error_rate,
                "gap_penalty": gap_penalty,
                "band_size": band_size,
                "use_kmers": use_kmers,
                "kdist_cutoff": kdist_cutoff,
                "omega_a": omega_a,
                "use_singletons": use_singletons,
                "omega_s": omega_s,
                "outdir": outdir,
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )
        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("amplidenoise.denoise")

        if cfg.uniques is None:
            raise AmpliDenoiseUsageError("No uniques file given. Provide --uniques or `uniques` in the config.")

        table = load_uniques(cfg.uniques)
        err = resolve_error_matrix(cfg)
        settings = cfg.engine_settings()
        # Every precondition is checked here, before anything is written.
        ctx = build_context(table.sequences, table.abundances, err, cfg.resolved_score(), settings)

        layout = create_output_layout(cfg.outdir)
        step_plan = [
            f"Load {len(table.sequences)} uniques ({table.total_reads} reads) from {cfg.uniques}",
            "Run divisive clustering until no family is significant "
            f"(omega_a={cfg.omega_a:g}, singletons={'on' if cfg.use_singletons else 'off'})",
            f"Write genotypes and transition counts under {layout.denoise_dir}",
        ]

        manifest = create_run_manifest(
            command="denoise",
            argv=sys.argv,
            config_path=config_path,
            parameters=cfg.model_dump(mode="json", exclude={"outdir", "log_file", "dry_run", "force"}),
            inputs=[path for path in (cfg.uniques, cfg.err_path) if path is not None],
            steps=step_plan,
        )
        write_manifest(layout, manifest)

        _print_plan(step_plan)
        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before clustering.")
            finalize_manifest(manifest, status="dry-run")
            write_manifest(layout, manifest)
            return 0

        machine = DenoiseMachine(ctx)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("Clustering round 1", total=None)
            for summary in machine.iter_rounds():
                progress.update(
                    task_id,
                    description=f"Clustering round {summary.round + 1} ({summary.n_clusters} clusters)",
                )
        result = machine.result()

        outputs = write_denoise_outputs(layout=layout, table=table, result=result, force=cfg.force)
        finalize_manifest(
            manifest,
            status="completed",
            outputs=outputs,
            statistics={
                "n_genotypes": len(result.genotypes),
                "rounds": result.rounds,
                "alignments": result.alignments,
                "kmer_skips": result.kmer_skips,
            },
        )
        write_manifest(layout, manifest)
        logger.info(
            "Denoised %d uniques into %d genotypes in %d rounds.",
            len(table.sequences),
            len(result.genotypes),
            result.rounds,
        )
        return 0

    except AmpliDenoiseError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("amplidenoise.denoise").exception("Unhandled denoise error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def denoise_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    uniques: Path | None = typer.Option(
        None,
        "--uniques",
        help="Unique sequences: TSV with sequence/abundance columns, or FASTA with ;size=N headers.",
    ),
    err_path: Path | None = typer.Option(None, "--err", help="4x4 error-rate matrix TSV (A C G T header)."),
    error_rate: float | None = typer.Option(
        None,
        "--error-rate",
        help="Uniform per-base error rate used when no error matrix is given.",
    ),
    gap_penalty: float | None = typer.Option(None, "--gap-penalty", help="Alignment gap penalty (<= 0)."),
    band_size: int | None = typer.Option(None, "--band-size", help="Alignment band width; negative disables banding."),
    use_kmers: bool | None = typer.Option(
        None,
        "--use-kmers/--no-use-kmers",
        help="Skip alignments whose k-mer distance exceeds the cutoff.",
    ),
    kdist_cutoff: float | None = typer.Option(None, "--kdist-cutoff", help="k-mer distance cutoff in [0, 1]."),
    omega_a: float | None = typer.Option(None, "--omega-a", help="Abundance p-value threshold for new clusters."),
    use_singletons: bool | None = typer.Option(
        None,
        "--use-singletons/--no-use-singletons",
        help="Also test abundance-1 families against --omega-s.",
    ),
    omega_s: float | None = typer.Option(None, "--omega-s", help="Singleton p-value threshold."),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    threads: int | None = typer.Option(None, "--threads", min=1, help="Worker threads for lambda updates."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Validate inputs and plan only."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing outputs."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_denoise(
        config_path=config,
        uniques=uniques,
        err_path=err_path,
        error_rate=error_rate,
        gap_penalty=gap_penalty,
        band_size=band_size,
        use_kmers=use_kmers,
        kdist_cutoff=kdist_cutoff,
        omega_a=omega_a,
        use_singletons=use_singletons,
        omega_s=omega_s,
        outdir=outdir,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
