"""
ChronoHeal - OODA Controller Service
====================================

Autonomous incident response for monitored services.
Runs the OODA loop per subject:
- Observe: Read recent evidence and ask the reasoning backend
- Orient: Correlate with learned patterns
- Decide: Rank hypotheses and pick safe actions
- Act: Dispatch through the action executor
- Verify: Re-observe and confirm recovery
"""
