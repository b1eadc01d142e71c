"""Pod, volume claim and Slurm node control logic for NodeSets."""

__version__ = "0.4.0"