"""
Example: Monte Carlo power for designs with censored responses
"""

import numpy as np
import pandas as pd

from survival_power import SurvivalPowerSim, evaluate_survival_power

# Two-level factor, 15 runs
design = pd.DataFrame({"a": [-1, 1] * 7 + [1]})

# Example 1: exponential responses right-censored at 5
print("Example 1: Exponential, right censored")
print("-" * 50)
power = evaluate_survival_power(
    design,
    "~ a",
    alpha=0.05,
    nsim=100,
    distribution="exponential",
    censor_point=5,
    censor_type="right",
)
print(power)
print(power.attrs["estimates"].describe())
print()

# Example 2: mean response moving from 1 to 2 (lognormal), detailed output
print("Example 2: Lognormal, effect size as (low, high)")
print("-" * 50)
p = SurvivalPowerSim(alpha=0.05, nsim=200, distribution="lognormal", censor_point=3, detailed_output=True)
print(p.get_power(design, "~ a", effect_size=[1, 2]))
print()


# Example 3: custom generator with a narrower lognormal and a fixed-scale fit
print("Example 3: Custom generator")
print("-" * 50)


def rlognorm(X, b, rng):
    y = rng.lognormal(mean=X @ b, sigma=0.4)
    censored = y > 1.2
    return np.where(censored, 1.2, y), ~censored


p = SurvivalPowerSim(alpha=0.2, nsim=100, distribution="lognormal", rfunction_surv=rlognorm, scale=0.4)
print(p.get_power(design, "~ a", anticoef=[0.184, 0.101]))
print()

# Example 4: categorical factor, parallel run
print("Example 4: Categorical factor in parallel")
print("-" * 50)
design2 = pd.DataFrame({"a": [-1, 1] * 12, "b": ["low", "mid", "high"] * 8})
p = SurvivalPowerSim(alpha=0.05, nsim=500, distribution="gaussian", censor_point=1.5, parallel=True, seed=42)
print(p.get_power(design2, "~ a + b"))
print()

# Example 5: power over effect sizes and censor points
print("Example 5: Scenario grid")
print("-" * 50)
p = SurvivalPowerSim(alpha=0.05, nsim=100, distribution="exponential")
print(p.grid_sim_power(design, "~ a", effect_sizes=[0.5, 1, 2], censor_points=[3, 5, 10], threads=3))
