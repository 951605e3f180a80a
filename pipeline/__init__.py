"""
Resume Pipeline — Pipeline Package

  - pipeline.types: stages, run state, revision/review value types
  - pipeline.events: progress events and the per-session EventHub
  - pipeline.stages: collaborator contract and StageContext
  - pipeline.orchestrator: the stage sequence for one run
  - pipeline.service: PipelineService, the process-local owner of runs
"""
