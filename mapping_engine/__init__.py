# Distributor Column-Mapping Engine
__version__ = "1.2.0"
# v1.2.0 — Hybrid detection: learned mappings are consulted first, then the AI
# classifier runs alongside the synonym, pattern and value detectors and the
# hybrid_combiner fuses their proposals. Accepted runs feed training.py so
# recurring distributor files converge on a stable learned mapping.
