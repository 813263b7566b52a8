"""N-body gravity building blocks: multipole operators, integer coordinates, subhalo finding and time-step bookkeeping."""

__version__ = "0.1.0"

__all__ = [
    "coordinates",
    "operators",
    "stepping",
    "subfind",
    "subfind_kernels",
    "unbind",
]