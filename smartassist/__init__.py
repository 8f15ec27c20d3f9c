"""SmartAssist - live tutorial progress, code capture and help requests.

Student clients record progress, code snapshots and sessions; teacher
clients watch a composite dashboard kept fresh by change signals.
"""
