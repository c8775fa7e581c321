"""
notify/ -- Outbound notifications (transactional email).

Layer rule: no imports from api/, auth/, or cache/.
"""
