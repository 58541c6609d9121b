"""
MnemoGraph - Self-Maintaining Memory Graph
==========================================

A persistent graph of memories (nodes) and relations (edges) backed by
SQLite, with background engines that keep it useful over time.

Main Packages:
    - core: graph database, decay, pruning and semantic similarity engines
    - cli: command-line interface for maintenance jobs

Quick Start:
    from mnemograph.core import GraphDatabase, MemoryDecayEngine

    db = GraphDatabase("./data/memory_graph.db")
    db.initialize()
    node = db.create_node({"type": "activity", "content": "Reviewed PR #42"})
    MemoryDecayEngine(db).apply_decay()
"""

__version__ = "1.0.0"
