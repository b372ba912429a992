"""
Risk Heatmap: shared Python package.

Contains the core logic of the risk training and heatmap pipeline:
  - risk_heatmap.data.columns            column-map resolution and header normalisation
  - risk_heatmap.data.timestamps         timestamp parsing (full date-times and YYYY-MM)
  - risk_heatmap.data.sources            re-iterable row sources (CSV files, in-memory records)
  - risk_heatmap.features.analysis       vocabulary / time-span analysis pass
  - risk_heatmap.features.encoding       raw row -> fixed-length feature vector
  - risk_heatmap.features.buffer         disk-spillable encoded-row buffer + label policy
  - risk_heatmap.features.preparation    the two-pass preparation of a dataset
  - risk_heatmap.training.statistics     Welford statistics, split, standardisation
  - risk_heatmap.training.preprocessing  imputation and vector normalisation
  - risk_heatmap.training.hyperparameters bounded hyperparameter resolution + grids
  - risk_heatmap.training.classifiers    scikit-learn estimator factory
  - risk_heatmap.training.grid_search    cross-validated hyperparameter search
  - risk_heatmap.training.trainer        end-to-end training run
  - risk_heatmap.evaluation.metrics      confusion matrix, precision/recall/F1, AUC
  - risk_heatmap.evaluation.importance   Pearson feature importances
  - risk_heatmap.evaluation.evaluator    evaluation run against a labelled dataset
  - risk_heatmap.prediction.*            scoring, spatial aggregation, forecast payload
  - risk_heatmap.artifacts               immutable training artifacts + registry
  - risk_heatmap.runs                    run records and per-identity run coordination
  - risk_heatmap.memory                  resident-memory monitoring
  - risk_heatmap.config                  YAML config loading
  - risk_heatmap.logging_utils           project-wide logger factory
"""
