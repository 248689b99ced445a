"""
dotmesh - Dot pattern to 3D voxel model converter

Main entry point
"""

import sys
import os
import json
import logging
from dataclasses import asdict
from pathlib import Path

# Ensure repository root is on sys.path so "dotmesh" is importable from a checkout.
ROOT_DIR = Path(__file__).resolve().parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dotmesh.core.runtime_defaults import DEFAULTS
from dotmesh.core.output_paths import (
    pattern_output_path,
    model_output_path,
    quality_report_path,
)

_LOGGER = logging.getLogger(__name__)
DEFAULT_MESH_UNIT = "mm"
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".gif", ".tif", ".tiff", ".webp")


def run_cli():
    """Run the command line interface."""
    try:
        from dotmesh.core.logging_utils import setup_logging

        setup_logging()
    except Exception as e:
        _LOGGER.debug("Failed to initialize logging: %s", e, exc_info=True)

    if len(sys.argv) < 2:
        print_help()
        return

    cmd = sys.argv[1]

    if cmd == '--help' or cmd == '-h':
        print_help()
        return

    if cmd == '--info' and len(sys.argv) > 2:
        show_pattern_info(sys.argv[2])
        return

    if cmd == '--convert' and len(sys.argv) > 2:
        convert_image_to_csv(sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)
        return

    if cmd == '--build' and len(sys.argv) > 2:
        build_obj(sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)
        return

    if cmd == '--assess' and len(sys.argv) > 2:
        assess_file(sys.argv[2])
        return

    # Default: full processing
    if os.path.exists(cmd):
        process_file(cmd)
    else:
        print(f"Error: Unknown command or file not found: {cmd}")
        print("Use --help for usage information")


def print_help():
    from dotmesh.core.mesh_data import MeshLoader

    print("=" * 60)
    print("dotmesh - Dot pattern to 3D voxel model converter")
    print("=" * 60)
    print()
    print("Usage:")
    print("  python main.py <pattern.csv|image>        # Full processing")
    print("  python main.py --info <pattern.csv>       # Show pattern info")
    print("  python main.py --convert <image> [out.csv]    # Image to dot pattern")
    print("  python main.py --build <pattern.csv> [out.obj]  # Pattern to OBJ")
    print("  python main.py --assess <pattern.csv|mesh>  # Quality report")
    print()
    print(f"Image formats: {list(IMAGE_SUFFIXES)}")
    print(f"Mesh formats (--assess): {list(MeshLoader.SUPPORTED_FORMATS.keys())}")
    print(f"Max pattern dimension: {DEFAULTS.max_pattern_dimension}")
    print()
    print("Examples:")
    print("  python main.py logo.png")
    print("  python main.py --convert logo.png logo.csv")
    print("  python main.py --build logo.csv logo.obj")


def _load_pattern(filepath: str):
    from dotmesh.core.dot_pattern import parse_csv
    from dotmesh.core.image_converter import convert_image_file

    if Path(filepath).suffix.lower() in IMAGE_SUFFIXES:
        return convert_image_file(filepath)
    text = Path(filepath).read_text(encoding="utf-8")
    return parse_csv(text, max_dimension=DEFAULTS.max_pattern_dimension, filename=filepath)


def _write_report(report, path: Path) -> None:
    payload = asdict(report)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")


def _print_report(report) -> None:
    print(f"  Overall score: {report.overall_score}")
    print(f"  Geometry: {report.geometry.score:.1f} "
          f"(manifold {report.geometry.manifoldness:.1f}%, "
          f"self-intersections {report.geometry.self_intersections})")
    print(f"  Printability: {report.printability.score:.1f} "
          f"(support need {report.printability.support_need:.0f}, "
          f"min wall {report.printability.wall_thickness.min_thickness:.2f})")
    for rec in report.recommendations:
        print(f"  [{rec.priority}] {rec.message} -> {rec.action}")
    for warning in report.warnings:
        print(f"  ({warning.category}) {warning.message}")


def show_pattern_info(filepath: str):
    from dotmesh.core.dot_pattern import pattern_stats, validate_csv
    from dotmesh.core.pipeline import calculate_print_estimates

    print(f"\nPattern Info: {filepath}")
    print("-" * 40)

    try:
        if Path(filepath).suffix.lower() not in IMAGE_SUFFIXES:
            validation = validate_csv(Path(filepath).read_text(encoding="utf-8"))
            for warning in validation.warnings:
                print(f"  Warning: {warning}")
        pattern = _load_pattern(filepath)
        stats = pattern_stats(pattern)
        estimates = calculate_print_estimates(pattern)
        print(f"  size: {pattern.width} x {pattern.height}")
        print(f"  active dots: {stats.active_dots} / {stats.total_dots} ({stats.fill_percentage:.1f}%)")
        print(f"  volume: {estimates.volume_mm3:.1f} mm^3")
        print(f"  weight: {estimates.weight_g:.2f} g")
        print(f"  print time: {estimates.print_time_min:.1f} min")
        print(f"  cost: {estimates.cost:.2f}")
    except Exception as e:
        print(f"  Error: {e}")


def convert_image_to_csv(filepath: str, output_path: str | None = None):
    from dotmesh.core.dot_pattern import export_csv
    from dotmesh.core.image_converter import convert_image_file

    print(f"\nConverting: {filepath}")
    print("-" * 40)

    try:
        pattern = convert_image_file(filepath)
        print(f"  Pattern: {pattern.width} x {pattern.height}, {pattern.active_count:,} active dots")

        save_path = pattern_output_path(filepath, output_path)
        save_path.write_text(export_csv(pattern), encoding="utf-8")
        print(f"  Saved: {save_path}")

    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()


def build_obj(filepath: str, output_path: str | None = None):
    from dotmesh.core.obj_exporter import save_mesh
    from dotmesh.core.pipeline import build_model

    print(f"\nBuilding: {filepath}")
    print("-" * 40)

    try:
        pattern = _load_pattern(filepath)
        mesh = build_model(pattern)
        print(f"  Mesh: {mesh.n_vertices:,} vertices, {mesh.n_faces:,} faces")

        save_path = save_mesh(mesh, model_output_path(filepath, output_path))
        print(f"  Saved: {save_path}")

    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()


def assess_file(filepath: str):
    from dotmesh.core.mesh_data import MeshLoader
    from dotmesh.core.pipeline import build_model
    from dotmesh.core.quality import assess_quality

    print(f"\nAssessing: {filepath}")
    print("-" * 40)

    try:
        if Path(filepath).suffix.lower() in MeshLoader.SUPPORTED_FORMATS:
            mesh = MeshLoader(default_unit=DEFAULT_MESH_UNIT).load(filepath)
        else:
            mesh = build_model(_load_pattern(filepath))
        print(f"  Mesh: {mesh.n_vertices:,} vertices, {mesh.n_faces:,} faces")

        report = assess_quality(mesh, model_id=Path(filepath).stem)
        _print_report(report)

        save_path = quality_report_path(filepath)
        _write_report(report, save_path)
        print(f"  Saved: {save_path}")

    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()


def process_file(filepath: str):
    """Full processing: load/convert pattern, build, assess and export."""
    from dotmesh.core.error_reporter import ErrorReporter
    from dotmesh.core.pipeline import process_pattern

    print(f"\n{'='*60}")
    print(f"Processing: {filepath}")
    print(f"{'='*60}")

    reporter = ErrorReporter()
    try:
        # 1. Pattern
        print("\n[1/3] Loading pattern...")
        pattern = _load_pattern(filepath)
        print(f"      Size: {pattern.width} x {pattern.height}")
        print(f"      Active dots: {pattern.active_count:,}")

        # 2. Model
        print("\n[2/3] Building model...")
        result = process_pattern(pattern, reporter=reporter)
        stats = result.stats
        bbox = stats.bounding_box
        print(f"      Vertices: {stats.vertex_count:,}")
        print(f"      Faces: {stats.face_count:,}")
        print(f"      Size: {bbox.width:.1f} x {bbox.height:.1f} x {bbox.depth:.1f} {DEFAULT_MESH_UNIT}")
        print(f"      Watertight: {stats.is_watertight}")
        if result.report is not None:
            _print_report(result.report)

        # 3. Save
        print("\n[3/3] Saving output...")
        if result.obj_text is None:
            print("      Nothing to export (empty pattern without base)")
        else:
            output_path = model_output_path(filepath)
            output_path.write_text(result.obj_text, encoding="utf-8")
            print(f"      Saved: {output_path}")
        if result.report is not None:
            report_path = quality_report_path(filepath)
            _write_report(result.report, report_path)
            print(f"      Saved: {report_path}")

        print(f"\n{'='*60}")
        print("Done!")
        print(f"{'='*60}")

    except Exception as e:
        reporter.report(e, {"file": filepath})
        print(f"\nError: {e}")
        import traceback
        traceback.print_exc()


if __name__ == '__main__':
    run_cli()
