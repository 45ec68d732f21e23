"""Autonomous control loop: priorities, scaling, trust and recovery.

Priority engine, scaler and recovery analysis are pure calculators; the
control loop is the only component that persists their results.
"""
