"""
Chorus
======
Coordinator for multi-phase LLM production runs: phases of model calls run
sequentially or in parallel, share scoped context and output blocks, and may
pause for human review before continuing.
"""

__version__ = "0.1.0"
