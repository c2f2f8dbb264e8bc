"""Track sharing and voting lifecycle engine.

Import submodules directly (``engine.curation``, ``engine.ledger`` ...); the
package itself stays import-light so ``spotify`` and ``db`` can depend on
``engine.errors`` without cycles.
"""
