"""NodeSet pod identity, deletion ordering, volume-claim ownership and Slurm node control."""

__version__ = "0.2.0"