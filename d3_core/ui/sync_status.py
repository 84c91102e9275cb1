# =============================================================================
# d3_core/ui/sync_status.py
# Offline indicator and pending-sync panel
# Shows connectivity, queued changes and a manual "Sync now" action
# =============================================================================

import streamlit as st
from typing import Optional

from d3_core.errors.handlers import ErrorContext, handle_error, safe_execute
from d3_core.offline.unified_data_service import OfflineDataService, get_data_service


def render_offline_indicator(service: Optional[OfflineDataService] = None) -> None:
    """
    Render a one-line connectivity badge.

    Args:
        service: Data service (default: the shared one)
    """
    service = service or get_data_service()
    pending = service.pending_sync_count

    if service.is_online:
        if pending:
            st.caption(f"🟢 Online · syncing {pending} pending change(s)")
        else:
            st.caption("🟢 Online · all changes saved")
    else:
        st.caption(f"🔴 Offline · {pending} change(s) saved on this device")


def render_sync_status(
    service: Optional[OfflineDataService] = None,
    show_in_expander: bool = True,
) -> None:
    """
    Render the sync status panel.

    This component provides:
    - Online/offline indicator
    - Errors recorded by background syncs since the last rerun
    - Table of queued changes
    - Manual "Sync now" button

    Args:
        service: Data service (default: the shared one)
        show_in_expander: Whether to wrap in an expander (default: True)
    """
    service = service or get_data_service()

    # Background drains cannot draw; surface what they recorded now
    for error in service.pop_errors():
        handle_error(error, log_error=False)

    render_offline_indicator(service)

    def _render_panel():
        status = safe_execute(service.get_status, default={}) or {}
        sync = status.get("sync", {})

        col1, col2, col3 = st.columns(3)
        col1.metric("Pending", status.get("pending_sync", 0))
        col2.metric("Synced", sync.get("total_synced", 0))
        col3.metric("Dead-lettered", sync.get("dead_lettered", 0))

        if sync.get("last_success"):
            st.caption(f"Last successful sync: {sync['last_success'][:19].replace('T', ' ')}")
        if sync.get("last_error"):
            st.warning(f"Last sync stopped: {sync['last_error']}")

        queue_df = safe_execute(service.pending_queue)
        if queue_df is not None and not queue_df.empty:
            st.dataframe(queue_df, use_container_width=True, hide_index=True)
        else:
            st.info("📭 No pending changes")

        if st.button(
            "🔄 Sync now",
            key="d3_sync_now",
            use_container_width=True,
            disabled=not service.is_online,
        ):
            with ErrorContext("Syncing pending changes"):
                with st.spinner("Syncing..."):
                    result = service.sync_now()
                if result is None:
                    st.info("You're offline. Changes will sync when the connection returns.")
                elif result.ok:
                    st.success(f"✅ Synced {result.applied} change(s)")
                else:
                    st.warning(f"Synced {result.applied}, {result.remaining} still pending")

    if show_in_expander:
        with st.expander("☁️ Sync status", expanded=False):
            _render_panel()
    else:
        _render_panel()
