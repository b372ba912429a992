# pipeline/: ML pipeline scripts for the risk heatmap.
#
# Run scripts in order:
#   01_train_model       → grid-search, train and publish a model artifact
#   02_evaluate_model    → score a labelled dataset against the active artifact
#   03_generate_heatmap  → filter, score and aggregate rows into a forecast payload
