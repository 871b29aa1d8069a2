"""Drive a SLURM cluster over SSH: commands, batch jobs and an inference tunnel."""

__version__ = "0.1.0"
