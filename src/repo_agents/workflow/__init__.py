"""Workflow document model and the job graph builder.

Modules:
    expressions condition/value expression trees
    document    typed Workflow/Job/Step model and YAML serialization
    builder     agent specs → validated job graph (``compile_workflow``)
"""
