"""
dotmesh - dot pattern to 3D voxel model converter
"""

__version__ = "0.1.0"
