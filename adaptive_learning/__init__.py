"""
Adaptive Learning
=================

Execution memory, knowledge graph, progress scoring, warm-up context and
failure analysis for an AI coding-agent orchestrator.
"""

__version__ = "0.1.0"
