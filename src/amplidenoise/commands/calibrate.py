from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from amplidenoise.config import CalibrateConfig, merge_command_config
from amplidenoise.core.calibration import calibrate_kmers, plan_sampling, suggest_cutoff
from amplidenoise.core.uniques import load_uniques
from amplidenoise.exceptions import AmpliDenoiseError, AmpliDenoiseUsageError
from amplidenoise.logging import configure_logging, get_logger
from amplidenoise.manifest import create_run_manifest, finalize_manifest, write_manifest
from amplidenoise.paths import create_output_layout
from amplidenoise.utils.io import write_tsv

app = typer.Typer(help="Sample sequence pairs and compare alignment and k-mer distances.")
console = Console()


def _print_plan(step_plan: list[str]) -> None:
    console.print("[bold]Calibrate step plan[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def run_calibrate(
    *,
    config_path: Path | None,
    uniques: Path | None,
    max_aligns: int | None,
    max_align_distance: float | None,
    gap_penalty: float | None,
    band_size: int | None,
    kmer_size: int | None,
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
            section="calibrate",
            model_cls=CalibrateConfig,
            cli_overrides={
                "uniques": uniques,
                "max_aligns": max_aligns,
                "max_align_distance": max_align_distance,
                "gap_penalty": gap_penalty,
                "band_size": band_size,
                "kmer_size": kmer_size,
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
        logger = get_logger("amplidenoise.calibrate")

        if cfg.uniques is None:
            raise AmpliDenoiseUsageError("No uniques file given. Provide --uniques or `uniques` in the config.")

        table = load_uniques(cfg.uniques, require_abundance=False)
        layout = create_output_layout(cfg.outdir)
        plan = plan_sampling(len(table.sequences), cfg.max_aligns)

        step_plan = [
            f"Load {len(table.sequences)} sequences from {cfg.uniques}",
            f"Compare up to {plan.target} pairs (stride {plan.stride}, k={cfg.kmer_size})",
            f"Write paired distances to {layout.calibration_tsv}",
        ]
        if cfg.max_align_distance is not None:
            step_plan.append(
                f"Suggest a k-mer cutoff for pairs within alignment distance {cfg.max_align_distance:g}"
            )
        manifest = create_run_manifest(
            command="calibrate",
            argv=sys.argv,
            config_path=config_path,
            parameters=cfg.model_dump(mode="json", exclude={"outdir", "log_file", "dry_run", "force"}),
            inputs=[cfg.uniques],
            steps=step_plan,
        )
        write_manifest(layout, manifest)

        _print_plan(step_plan)
        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before alignments.")
            finalize_manifest(manifest, status="dry-run")
            write_manifest(layout, manifest)
            return 0

        with console.status(f"Aligning {plan.target} sequence pairs"):
            result = calibrate_kmers(
                table.sequences,
                cfg.resolved_score(),
                cfg.gap_penalty,
                cfg.max_aligns,
                band_size=cfg.band_size,
                kmer_size=cfg.kmer_size,
                threads=cfg.threads,
            )

        calibration_tsv = write_tsv(
            layout.calibration_tsv,
            ["seq1", "seq2", "align", "kmer"],
            (
                [table.labels[i], table.labels[j], f"{align:.6f}", f"{kmer:.6f}"]
                for (i, j), align, kmer in zip(result.pairs, result.align, result.kmer, strict=True)
            ),
            force=cfg.force,
        )
        statistics: dict[str, float | int] = {"pairs": len(result.pairs), "requested": result.requested}
        if cfg.max_align_distance is not None:
            try:
                cutoff = suggest_cutoff(result, cfg.max_align_distance)
            except AmpliDenoiseUsageError as exc:
                # The paired distances are already written and stay useful.
                logger.warning("%s", exc)
            else:
                statistics["suggested_kdist_cutoff"] = cutoff
                logger.info(
                    "Suggested k-mer distance cutoff %.4f keeps every pair within alignment distance %g.",
                    cutoff,
                    cfg.max_align_distance,
                )
                console.print(f"Suggested --kdist-cutoff: [bold]{cutoff:.4f}[/bold]")
        finalize_manifest(
            manifest,
            status="completed",
            outputs=[calibration_tsv],
            statistics=statistics,
        )
        write_manifest(layout, manifest)
        logger.info("Wrote %d calibration pairs.", len(result.pairs))
        return 0

    except AmpliDenoiseError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("amplidenoise.calibrate").exception("Unhandled calibrate error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def calibrate_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    uniques: Path | None = typer.Option(None, "--uniques", help="Sequences as TSV or size-annotated FASTA."),
    max_aligns: int | None = typer.Option(None, "--max-aligns", min=1, help="Maximum pairwise comparisons."),
    max_align_distance: float | None = typer.Option(
        None,
        "--max-align-distance",
        min=0.0,
        max=1.0,
        help="Report the smallest k-mer cutoff that keeps all pairs within this alignment distance.",
    ),
    gap_penalty: float | None = typer.Option(None, "--gap-penalty", help="Alignment gap penalty (<= 0)."),
    band_size: int | None = typer.Option(None, "--band-size", help="Alignment band width; negative disables banding."),
    kmer_size: int | None = typer.Option(None, "--kmer-size", help="k-mer length."),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    threads: int | None = typer.Option(None, "--threads", min=1, help="Worker threads for alignments."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not align."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing outputs."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_calibrate(
        config_path=config,
        uniques=uniques,
        max_aligns=max_aligns,
        max_align_distance=max_align_distance,
        gap_penalty=gap_penalty,
        band_size=band_size,
        kmer_size=kmer_size,
        outdir=outdir,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
