"""stepflow: declarative step-based workflow engine.

Most callers only need ``stepflow.engine``:

    from stepflow.engine import TransitionEngine, WorkflowRegistry

    registry = WorkflowRegistry()
    registry.load_templates()
    engine = TransitionEngine(registry)
"""

__version__ = "0.1.0"
