from prometheus_client import Counter, Gauge, Histogram

TRIAGE_DECISIONS = Counter("crucible_triage_decisions_total", "Triage decisions", ["tier", "mode"])
CLARIFICATIONS   = Counter("crucible_clarifications_total", "Requests sent back for clarification")
LOOP_ITERATIONS  = Histogram("crucible_loop_iterations", "Scoring rounds per validation loop", ["tier"],
                             buckets=[1, 2, 3, 4, 5, 7, 10])
LOOP_RESULTS     = Counter("crucible_loop_results_total", "Validation loop terminal states", ["state"])
EVOLVER_FAILURES = Counter("crucible_evolver_failures_total", "Failed evolve attempts", ["kind"])
SCORER_FAILURES  = Counter("crucible_scorer_failures_total", "Dimension scorer plugin failures", ["dimension"])
CALIBRATIONS     = Counter("crucible_calibrations_total", "Calibration passes", ["result"])
WEIGHTS_VERSION  = Gauge("crucible_weights_version", "Version of the active calibration state")
