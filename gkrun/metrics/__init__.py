"""
Derived results for Complete runs.

- kernels: numpy fits and averages
- aggregator: ResultAggregator (linear / nonlinear dispatch)
- components: ComponentRunSplitter (box-grid modes, parameter scans)
"""
