"""
Streamlit Admin Console for PulseKeeper

Operators use this console to inspect grants, check deadlines and
trigger redemptions by hand.

DESIGN PRINCIPLES:
1. Every action that moves funds needs an explicit button press
2. Amounts are shown exactly as stored (smallest unit, no rounding)
3. Errors are shown, never hidden
"""

import asyncio
from datetime import datetime, timezone

import streamlit as st

from pulsekeeper.config import validate_all_settings
from pulsekeeper.models import GrantRequest
from pulsekeeper.service import PulseKeeperService, create_app_components


# Page configuration
st.set_page_config(
    page_title="PulseKeeper",
    page_icon="⏱️",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .stButton>button {
        width: 100%;
        margin-top: 10px;
    }
    .success-box {
        padding: 20px;
        background-color: #d4edda;
        border-radius: 10px;
        border-left: 5px solid #28a745;
        margin: 10px 0;
    }
    .error-box {
        padding: 20px;
        background-color: #f8d7da;
        border-radius: 10px;
        border-left: 5px solid #dc3545;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@st.cache_resource
def get_service() -> PulseKeeperService:
    """Get or create the service (cached)."""
    try:
        service, _ = create_app_components()
    except Exception as e:
        st.error(f"Failed to initialize Google Sheets storage: {e}")
        service, _ = create_app_components(storage_backend="memory")
    return service


def main():
    """Main application entry point."""
    service = get_service()

    st.sidebar.title("⏱️ PulseKeeper")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigate to:",
        ["📋 Grants", "🔎 Status", "💸 Distribution", "⚙️ Settings"],
        index=0,
    )

    if page == "📋 Grants":
        render_grants_page(service)
    elif page == "🔎 Status":
        render_status_page(service)
    elif page == "💸 Distribution":
        render_distribution_page(service)
    elif page == "⚙️ Settings":
        render_settings_page(service)


def render_grants_page(service: PulseKeeperService):
    """Grants and allowances of one user."""
    st.title("📋 Grants")

    user = st.text_input("User address", placeholder="0x...")

    with st.expander("➕ Store a grant"):
        asset = st.text_input("Asset address", placeholder="0x... (0xeeee...eeee for ETH)")
        auth_manager = st.text_input("Delegation manager address", placeholder="0x...")
        auth_context = st.text_area("Permission context (hex)")
        period_cap = st.text_input("Period cap (smallest unit)", value="0")
        period_length = st.number_input("Period length (seconds)", min_value=1, value=86400)

        if st.button("💾 Store Grant", type="primary"):
            try:
                grant = run_async(service.store_grant(GrantRequest(
                    user=user,
                    asset=asset,
                    auth_context=auth_context,
                    auth_manager=auth_manager,
                    period_cap=int(period_cap),
                    period_length_seconds=int(period_length),
                )))
                st.success(f"Stored grant {grant.id} anchored at {grant.granted_at.isoformat()}")
            except Exception as e:
                st.error(f"Failed to store grant: {e}")

    if not user:
        st.info("Enter a user address to see their grants.")
        return

    try:
        summary = run_async(service.get_allowance_summary(user))
    except Exception as e:
        st.error(f"Error: {e}")
        return

    st.markdown(f"**Active grants:** {summary.total_assets}")
    for allowance in summary.allowances:
        with st.container(border=True):
            col1, col2 = st.columns([3, 1])
            with col1:
                st.markdown(f"**Asset:** `{allowance.asset}`")
                st.markdown(
                    f"Cap `{allowance.period_cap}` · redeemed `{allowance.already_redeemed}` · "
                    f"available `{allowance.available_to_redeem}`"
                )
                st.caption(f"Period {allowance.period_starts_at} → {allowance.period_ends_at}")
            with col2:
                if st.button("🗑️ Deactivate", key=f"deactivate-{allowance.asset}"):
                    try:
                        run_async(service.deactivate_grant(user, allowance.asset))
                        st.rerun()
                    except Exception as e:
                        st.error(f"Failed to deactivate: {e}")

    with st.expander("🧾 Redemption history"):
        records = run_async(service.get_redemptions(user))
        if not records:
            st.markdown("No redemptions yet.")
        for record in records:
            st.json(record.model_dump(mode="json"))


def render_status_page(service: PulseKeeperService):
    """Deadline status of known users."""
    st.title("🔎 Status")

    if st.button("🔄 Check all users", type="primary"):
        with st.spinner("Reading the registry..."):
            statuses = run_async(service.get_all_statuses())

        if not statuses:
            st.info("No users with active grants.")
        for status in statuses:
            deadline = (
                datetime.fromtimestamp(status.deadline, tz=timezone.utc).isoformat()
                if status.deadline else "-"
            )
            if status.error:
                st.error(f"{status.user}: registry read failed ({status.error})")
            elif status.distributing:
                st.warning(f"{status.user}: past deadline ({deadline})")
            elif status.registered:
                st.success(f"{status.user}: active until {deadline}")
            else:
                st.info(f"{status.user}: not registered")


def render_distribution_page(service: PulseKeeperService):
    """Manual redemption and full distribution runs."""
    st.title("💸 Distribution")

    st.markdown("### Redeem one user now")
    user = st.text_input("User address", placeholder="0x...")
    if st.button("💸 Redeem Now") and user:
        with st.spinner("Submitting..."):
            try:
                result = run_async(service.redeem_now(user))
            except Exception as e:
                st.error(f"Error: {e}")
                return

        if result.success:
            st.markdown(f"""
            <div class="success-box">
                <h4>✅ Redeemed</h4>
                <p>Settled assets: {", ".join(result.settled_assets) or "none"}</p>
            </div>
            """, unsafe_allow_html=True)
        else:
            st.markdown(f"""
            <div class="error-box">
                <h4>❌ Not redeemed</h4>
                <p>{result.reason or "; ".join(result.errors)}</p>
            </div>
            """, unsafe_allow_html=True)
        with st.expander("🔍 Details"):
            st.json(result.model_dump(mode="json"))

    st.markdown("---")
    st.markdown("### Run distribution for everyone")
    if st.button("▶️ Run Distribution", type="primary"):
        with st.spinner("Running..."):
            report = run_async(service.run_distribution())

        st.markdown(
            f"**Checked:** {report.users_checked} · "
            f"**Distributing:** {report.users_distributing} · "
            f"**Errors:** {len(report.errors)}"
        )
        for error in report.errors:
            st.error(error)
        with st.expander("🔍 Report"):
            st.json(report.model_dump(mode="json"))


def render_settings_page(service: PulseKeeperService):
    """Configuration status."""
    st.title("⚙️ Settings")

    st.markdown("### Connection Status")
    status = validate_all_settings()

    sections = [
        ("Chain (RPC and registry)", "chain"),
        ("Session account (signing key)", "session"),
        ("Google Sheets (Storage)", "google_sheets"),
        ("Application", "app"),
    ]

    for name, key in sections:
        if status.get(key, False):
            st.success(f"✅ {name} - Configured")
        else:
            error = status.get(f"{key}_error", "Not configured")
            st.error(f"❌ {name} - {error}")

    st.markdown("### Health")
    st.json(run_async(service.health()))


if __name__ == "__main__":
    main()
