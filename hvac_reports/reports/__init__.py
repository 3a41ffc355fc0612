"""
Report execution engine.

Key components:
- DataSourceCatalog: which fields exist on which backend table
- QueryCompiler: definition + params -> per-backend sub-plans
- merge_results: hash joins across backends
- apply_calculated_fields: sandboxed formula columns
- apply_domain_weighting: affluence, seasonal and route-efficiency factors
- aggregate: group-by for visualizations
- ResultCache / InFlightRegistry: TTL cache and single-flight
- ReportExecutor: the orchestrator
- InMemoryReportRepository: report CRUD, sharing and templates
- ExecutionHistory: per-report execution analytics
"""
