"""
Core processing modules for dotmesh
"""

from .errors import (
    DotMeshError,
    ParseError,
    ImageProcessingError,
    MeshGenerationError,
    ExportError,
    QualityAssessmentError,
    TaskCancelledError,
)
from .params import ConversionParams, Model3DParams, ExportParams
from .dot_pattern import (
    DotPattern,
    PatternMetadata,
    parse_csv,
    export_csv,
    validate_csv,
    create_empty_pattern,
    pattern_stats,
)
from .image_converter import convert_image, convert_image_file, load_image
from .mesh_data import Mesh, MeshStats, MeshLoader, compute_mesh_stats
from .mesh_builder import generate_mesh
from .mesh_optimizer import merge_adjacent_faces, optimize_mesh
from .obj_exporter import export_to_obj, save_mesh
from .quality import QualityConfig, QualityReport, assess_quality, compare_quality
from .error_reporter import ErrorReporter, ReportedError
from .task_runner import TaskRunner, TaskEvent, parameter_grid
from .pipeline import ModelResult, build_model, process_pattern, calculate_print_estimates

__all__ = [
    # Errors
    'DotMeshError',
    'ParseError',
    'ImageProcessingError',
    'MeshGenerationError',
    'ExportError',
    'QualityAssessmentError',
    'TaskCancelledError',
    # Parameters
    'ConversionParams',
    'Model3DParams',
    'ExportParams',
    # Patterns
    'DotPattern',
    'PatternMetadata',
    'parse_csv',
    'export_csv',
    'validate_csv',
    'create_empty_pattern',
    'pattern_stats',
    # Image conversion
    'convert_image',
    'convert_image_file',
    'load_image',
    # Meshes
    'Mesh',
    'MeshStats',
    'MeshLoader',
    'compute_mesh_stats',
    'generate_mesh',
    # Optimization
    'merge_adjacent_faces',
    'optimize_mesh',
    # Export
    'export_to_obj',
    'save_mesh',
    # Quality
    'QualityConfig',
    'QualityReport',
    'assess_quality',
    'compare_quality',
    # Orchestration
    'ErrorReporter',
    'ReportedError',
    'TaskRunner',
    'TaskEvent',
    'parameter_grid',
    'ModelResult',
    'build_model',
    'process_pattern',
    'calculate_print_estimates',
]
