"""
Pipeline stages. Each stage subclasses ``base.PipelineStage``.

  scrape         origin service → shards
  merge_shards   shards → master snapshot
  clean_master   master snapshot → cleaned snapshot
  ingest         cleaned snapshots → production relations
  sweep          drops orphaned staging relations
"""
