"""LLM gateway decision core.

Three cooperating services decide how a user request is answered:

- ContextBuilder  - token-bounded conversation history selection
- LayerRouter     - cost-tiered model routing with cross-check and escalation
- Orchestrator    - multi-pass generation under one shared token budget

Wire them together with ServiceContainer.build(settings).
"""

__version__ = "0.1.0"
