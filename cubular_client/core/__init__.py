"""
Core client layers: error taxonomy, models, authenticated fetch, reconciliation
and the session store.

Import from the submodules directly, for example:

    from cubular_client.core.http import ApiClient, ResilientFetch
    from cubular_client.core.session_store import SessionStore
"""
