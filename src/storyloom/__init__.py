"""storyloom: versioned, branchable story graph store."""

__version__ = "0.1.0"
