from __future__ import annotations

import argparse
import gc
import json
import sys
import time
import tracemalloc
from pathlib import Path
from typing import Any

import numpy as np
import psutil

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dotmesh.core.dot_pattern import DotPattern, parse_csv
from dotmesh.core.mesh_builder import generate_mesh
from dotmesh.core.mesh_optimizer import merge_adjacent_faces, optimize_mesh
from dotmesh.core.obj_exporter import export_to_obj
from dotmesh.core.params import Model3DParams
from dotmesh.core.quality import assess_quality


def _fmt_sec(v: float) -> str:
    return f"{v * 1000.0:.1f}ms" if v < 1.0 else f"{v:.2f}s"


def _fmt_mb(v: float) -> str:
    return "nan" if not np.isfinite(v) else f"{v:.1f}MB"


def _random_pattern(width: int, height: int, fill: float, seed: int) -> DotPattern:
    rng = np.random.default_rng(seed)
    return DotPattern.from_array(rng.random((height, width)) < fill)


def _rss_mb() -> float:
    return float(psutil.Process().memory_info().rss) / (1024.0 * 1024.0)


def _timed(fn, *args, **kwargs) -> tuple[Any, float]:
    t0 = time.perf_counter()
    out = fn(*args, **kwargs)
    return out, time.perf_counter() - t0


def run_profile(args: argparse.Namespace) -> dict[str, Any]:
    if args.pattern:
        pattern = parse_csv(Path(args.pattern).read_text(encoding="utf-8"), filename=args.pattern)
    else:
        pattern = _random_pattern(args.width, args.height, args.fill, args.seed)

    params = Model3DParams(spacing=args.spacing, chamfer_edges=args.chamfer)
    print(f"[pattern] {pattern.width}x{pattern.height}, active={pattern.active_count:,}, spacing={args.spacing}")

    rows: list[dict[str, Any]] = []
    tracemalloc.start()
    for i in range(int(args.iterations)):
        gc.collect()
        tracemalloc.reset_peak()

        mesh, build_sec = _timed(generate_mesh, pattern, params)
        raw_faces = mesh.n_faces
        merged, merge_sec = _timed(merge_adjacent_faces, mesh, pattern)
        optimized, optimize_sec = _timed(optimize_mesh, merged)
        _, export_sec = _timed(export_to_obj, optimized)
        assess_sec = float("nan")
        if not args.skip_quality:
            _, assess_sec = _timed(assess_quality, optimized)

        _, tm_peak = tracemalloc.get_traced_memory()
        row = {
            "iteration": i + 1,
            "build_sec": build_sec,
            "merge_sec": merge_sec,
            "optimize_sec": optimize_sec,
            "export_sec": export_sec,
            "assess_sec": assess_sec,
            "raw_faces": int(raw_faces),
            "merged_faces": int(merged.n_faces),
            "optimized_faces": int(optimized.n_faces),
            "tracemalloc_peak_mb": float(tm_peak) / (1024.0 * 1024.0),
            "rss_mb": _rss_mb(),
        }
        rows.append(row)
        print(
            f"[iter {i+1}] build={_fmt_sec(build_sec)}, merge={_fmt_sec(merge_sec)}, "
            f"optimize={_fmt_sec(optimize_sec)}, export={_fmt_sec(export_sec)}, "
            f"faces={raw_faces:,}->{merged.n_faces:,}->{optimized.n_faces:,}, "
            f"trace_peak={_fmt_mb(row['tracemalloc_peak_mb'])}, rss={_fmt_mb(row['rss_mb'])}"
        )

    tracemalloc.stop()

    def _agg(key: str) -> dict[str, float]:
        vals = np.asarray([float(r[key]) for r in rows], dtype=np.float64)
        vals = vals[np.isfinite(vals)]
        if vals.size <= 0:
            nan = float("nan")
            return {"mean": nan, "p95": nan, "max": nan}
        return {
            "mean": float(np.mean(vals)),
            "p95": float(np.percentile(vals, 95.0)),
            "max": float(np.max(vals)),
        }

    return {
        "pattern": args.pattern or "random",
        "width": pattern.width,
        "height": pattern.height,
        "active": pattern.active_count,
        "spacing": float(args.spacing),
        "chamfer": bool(args.chamfer),
        "iterations": int(args.iterations),
        "metrics": {
            key: _agg(key)
            for key in ("build_sec", "merge_sec", "optimize_sec", "export_sec", "assess_sec", "tracemalloc_peak_mb", "rss_mb")
        },
        "rows": rows,
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Profile the pattern -> mesh -> optimize -> OBJ pipeline.")
    parser.add_argument("pattern", nargs="?", default=None, help="CSV pattern (random pattern when omitted).")
    parser.add_argument("--width", type=int, default=100, help="Random pattern width.")
    parser.add_argument("--height", type=int, default=100, help="Random pattern height.")
    parser.add_argument("--fill", type=float, default=0.5, help="Random pattern fill ratio.")
    parser.add_argument("--seed", type=int, default=0, help="Random pattern seed.")
    parser.add_argument("--spacing", type=float, default=0.0, help="Cube spacing (0 lets merging apply).")
    parser.add_argument("--chamfer", action="store_true", help="Build chamfered cubes.")
    parser.add_argument("--iterations", type=int, default=3, help="Repeat count.")
    parser.add_argument("--skip-quality", action="store_true", help="Skip quality assessment.")
    parser.add_argument("--json-out", default="", help="Optional JSON output path.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    result = run_profile(args)
    m = result["metrics"]
    print(
        "[summary] "
        f"build mean={_fmt_sec(m['build_sec']['mean'])}, "
        f"merge mean={_fmt_sec(m['merge_sec']['mean'])}, "
        f"optimize mean={_fmt_sec(m['optimize_sec']['mean'])}, "
        f"trace_peak max={_fmt_mb(m['tracemalloc_peak_mb']['max'])}, "
        f"rss max={_fmt_mb(m['rss_mb']['max'])}"
    )
    out = str(args.json_out or "").strip()
    if out:
        out_path = Path(out).expanduser().resolve()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(result, ensure_ascii=False, indent=2), encoding="utf-8")
        print(f"[saved] {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
