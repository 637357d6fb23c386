"""
Query subsystem.

Components:
- query_model.py: operators, canonical fields, structured query types
- query_parser.py: line-oriented query text -> StructuredQuery (tolerant)
- query_optimizer.py: validation and limit clamping
- query_compiler.py: native narrowing predicate + exact refine plan + stable sort
- query_cache.py: result cache and timeout guard
- query_engine.py: the end-to-end pipeline
- errors.py: exception hierarchy
"""
