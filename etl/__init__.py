# WORKFLOW: ETL (Extract, Transform, Load) package for HTS schedule imports.
# Used by: Import orchestrator, enrichment services, CLI
# Modules include:
# 1. fetcher.py - Discover and download USITC schedule revisions into object storage
# 2. staging_loader.py - Normalize source records and upsert them into the staging table
# 3. rate_classifier.py - Classify rate text and pull out its numbers
# 4. formula_compiler.py - Compile rate text into safe arithmetic formulas
# 5. validators.py - Validate staged rows and compute formula coverage
# 6. diff_engine.py - Compare staged rows with the active version
# 7. promotion.py - Batched, resumable promotion into the production table
#
# ETL flow: USITC JSON -> Object storage -> Staging -> Validation -> Diff -> Promotion
# Every step is idempotent so an interrupted import can resume from its checkpoint.

"""
ETL package for HTS schedule ingestion and promotion.
"""
