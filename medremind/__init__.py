"""
medremind: medication reminder scheduling and escalation core.
"""
