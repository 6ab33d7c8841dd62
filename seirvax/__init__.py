"""seirvax: Stochastic SEIR outbreak risk under vaccination coverage.

A Monte Carlo study of a closed SEIR population simulated as a
continuous-time Markov jump process:
  - Exact (Gillespie direct method) and adaptive tau-leaping engines
  - Vaccination at t=0 by moving round(p × (N − 1)) individuals to R
  - Independent, reproducible replicates over a multiprocessing pool
  - Coverage sweep of outbreak probability and conditional outbreak size
"""

__version__ = "0.1.0"
