from __future__ import annotations

import argparse
import asyncio
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from cutout.contracts import ManifestRecord, Tier
from cutout.exceptions import CutoutError
from cutout.io import append_jsonl, save_png, write_json
from cutout.logging_setup import get_logger, setup_logging
from cutout.pipeline import BatchInput, BatchItem, TierDecision, TierPipeline, build_default_strategies

logger = get_logger("cutout.run")


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def _record(item: BatchItem, output_path: str, requested) -> ManifestRecord:
    if item.result is not None:
        return ManifestRecord(
            source_image=item.source_name,
            output_image=output_path,
            requested_tier=item.result.requested.tier,
            tier_used=item.result.tier_used,
            status="done",
            degradations=item.result.degradations,
        )
    return ManifestRecord(
        source_image=item.source_name,
        requested_tier=requested,
        status="failed",
        error=f"{type(item.error).__name__}: {item.error}",
    )


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Tiered background removal (RGBA PNG cutouts).")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing JPEG/PNG images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for PNGs + manifest.jsonl.")
    parser.add_argument(
        "--mode",
        default="auto",
        choices=["auto"] + [t.value for t in Tier],
        help="Quality tier. 'auto' analyzes the first image and picks one tier for the batch.",
    )
    parser.add_argument(
        "--fast-variant",
        default=None,
        choices=["baseline", "probabilistic"],
        help="Fast tier segmenter (default: CUTOUT_FAST_VARIANT or 'baseline').",
    )
    parser.add_argument("--crop", action="store_true", help="Crop outputs to the subject (+padding).")
    parser.add_argument("--max-workers", type=int, default=None, help="Concurrent images (default: CUTOUT_MAX_WORKERS).")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args()

    setup_logging(verbose=args.verbose)

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    output_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = output_dir / "manifest.jsonl"

    pipeline = TierPipeline(
        strategies=build_default_strategies(fast_variant=args.fast_variant),
        crop=args.crop,
        max_workers=args.max_workers,
    )
    decision = None if args.mode == "auto" else TierDecision.manual(args.mode)
    requested = None if decision is None else decision.tier

    items = [BatchInput.from_path(p, source_name=p.relative_to(input_dir).as_posix()) for p in images]

    stats = {"total": len(items), "done": 0, "failed": 0, "degraded": 0}
    stats.update({f"tier_{t.value}": 0 for t in Tier})

    t0 = time.perf_counter()
    with open(manifest_path, "a", encoding="utf-8") as manifest_fp, tqdm(
        total=len(items), desc="Removing backgrounds", unit="img"
    ) as bar:

        def _on_done(item: BatchItem) -> None:
            out_path = ""
            if item.result is not None:
                out = output_dir / Path(item.source_name).parent / item.result.output_filename
                try:
                    save_png(item.result.to_png_bytes(), str(out))
                    out_path = str(out)
                except OSError as e:
                    logger.error("Could not write %s: %s", out, e)
                    item = BatchItem(source_name=item.source_name, error=CutoutError(f"write failed: {e}"))

            if item.result is not None:
                stats["done"] += 1
                stats[f"tier_{item.result.tier_used.value}"] += 1
                if item.result.degradations:
                    stats["degraded"] += 1
            else:
                stats["failed"] += 1

            append_jsonl(manifest_fp, _record(item, out_path, requested))
            bar.update(1)

        asyncio.run(pipeline.process_batch(items, decision=decision, on_done=_on_done))

    t1 = time.perf_counter()
    summary = dict(stats, elapsed_s=round(t1 - t0, 3), mode=args.mode)
    write_json(str(output_dir / "summary.json"), summary)
    print(
        "Done.\n"
        f"- total:    {stats['total']}\n"
        f"- done:     {stats['done']} (degraded: {stats['degraded']})\n"
        f"- failed:   {stats['failed']}\n"
        f"- tiers:    precise={stats['tier_precise']} balanced={stats['tier_balanced']} fast={stats['tier_fast']}\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output:   {output_dir.resolve()}\n"
        f"- manifest: {manifest_path.resolve()}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
