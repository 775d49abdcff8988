"""
runbox Console - Streamlit Application

An operator console for running and previewing workspace files through the
runbox API: pick a workspace and file, run it, watch its status and output,
stop it, and tune the workspace's simulated network conditions.
"""

import time

import streamlit as st

from runbox.client import RunnerClient, RunnerClientError
from runbox.config import ConfigError, get_config
from runbox.errors import NotFound
from runbox.schemas import ExecutionState, ExecutionStatus, NetworkProfile, RunOptions, RunResult, Strategy


# Page configuration
st.set_page_config(
    page_title="runbox Console",
    page_icon="▶️",
    layout="wide",
)

# Custom CSS for better styling
st.markdown("""
<style>
    .main-header {
        font-size: 2.5rem;
        font-weight: 700;
        color: #1E88E5;
        margin-bottom: 0.5rem;
    }
    .sub-header {
        font-size: 1.1rem;
        color: #666;
        margin-bottom: 2rem;
    }
</style>
""", unsafe_allow_html=True)


STATE_BADGES = {
    ExecutionState.IDLE: "⚪ Idle",
    ExecutionState.STARTING: "🟡 Starting",
    ExecutionState.RUNNING: "🟢 Running",
    ExecutionState.STOPPED: "🔵 Stopped",
    ExecutionState.CRASHED: "🔴 Crashed",
    ExecutionState.TIMED_OUT: "🟠 Timed out",
    ExecutionState.CLEANED: "⚫ Cleaned",
}


def init_session_state():
    """Initialize Streamlit session state variables."""
    if "last_result" not in st.session_state:
        st.session_state.last_result = None
    if "errors" not in st.session_state:
        st.session_state.errors = []


def get_client() -> RunnerClient:
    """Get a client for the configured API."""
    if "client" not in st.session_state:
        st.session_state.client = RunnerClient(get_config().api_url)
    return st.session_state.client


def validate_config() -> bool:
    """Validate configuration and show errors if any."""
    try:
        get_config()
        return True
    except ConfigError as e:
        st.error(f"⚠️ Configuration Error: {str(e)}")
        st.info("Please check your .env file and ensure all values are valid.")
        return False


def display_errors():
    """Display any errors from the last operation."""
    if st.session_state.errors:
        for error in st.session_state.errors:
            st.error(error)


# =============================================================================
# RESULT AND STATUS
# =============================================================================

def display_run_result(client: RunnerClient, result: RunResult):
    """Display the outcome of the last run request."""
    if result.error_code == "unsupported_type":
        st.warning(f"**{result.error}**")
        st.info(result.message)
        return

    if result.error_code == "launch_failed":
        st.error(f"❌ {result.error}")
        if result.message:
            with st.expander("Diagnostic"):
                st.code(result.message, language="text")
        return

    if result.strategy == Strategy.STATIC:
        link = f"{client.base_url}{result.preview_url}"
        st.success("✅ Static preview ready")
        col1, col2 = st.columns([3, 1])
        with col1:
            st.code(link, language=None)
        with col2:
            st.link_button("🔗 Open", link, use_container_width=True)

    elif result.strategy == Strategy.CONTAINER:
        st.success("✅ Container launched")
        col1, col2 = st.columns([3, 1])
        with col1:
            st.code(result.preview_url, language=None)
        with col2:
            st.link_button("🔗 Open", result.preview_url, use_container_width=True)
        st.caption("The service inside the container may still be booting. Refresh status to follow its logs.")

    else:
        if result.success:
            st.success("✅ Script completed")
        elif result.error_code == "timed_out":
            st.warning(f"⏱️ {result.error}")
        else:
            st.error(f"❌ {result.error}")
        st.markdown("#### Output")
        st.code(result.stdout or "(no output)", language="text")


def display_status(status: ExecutionStatus):
    """Display the workspace's current or last execution."""
    badge = STATE_BADGES.get(status.state, status.state.value)
    if status.state == ExecutionState.CLEANED and status.outcome:
        badge = f"{badge} ({STATE_BADGES.get(status.outcome, status.outcome.value)})"

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("State", badge)
    with col2:
        st.metric("📄 File", status.file or "N/A")
    with col3:
        st.metric("🔌 Port", status.port or "N/A")
    with col4:
        remaining = status.time_remaining
        st.metric("⏱️ Time Remaining", f"{remaining // 60}m {remaining % 60}s" if remaining is not None else "N/A")

    if status.exit_code is not None:
        st.caption(f"Exit code: {status.exit_code}")
    if status.error:
        st.error(status.error)

    st.markdown("### 📜 Output")
    if status.output_truncated:
        st.caption("Older output was truncated.")
    if status.output:
        st.code(status.output, language="text")
    else:
        st.caption("No output yet...")


def display_network_section(client: RunnerClient, workspace_id: str):
    """Display and edit the workspace's simulated network conditions."""
    profile = client.network_profile(workspace_id)

    latency = st.slider("Latency (ms)", 0, 5000, profile.latency_ms, step=50)
    failure_rate = st.slider("Failure rate", 0.0, 1.0, profile.failure_rate, step=0.05)

    col1, col2 = st.columns(2)
    with col1:
        if st.button("💾 Apply", type="primary", use_container_width=True, key="apply_network"):
            client.set_network_profile(workspace_id, NetworkProfile(latency_ms=latency, failure_rate=failure_rate))
            st.success("Network profile applied")
    with col2:
        if st.button("♻️ Reset", use_container_width=True, key="reset_network"):
            client.clear_network_profile(workspace_id)
            st.rerun()

    st.caption(
        "Applied to preview requests before they are served and passed to containers "
        "as NETWORK_LATENCY / NETWORK_FAILURE_RATE."
    )


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    init_session_state()

    # Header
    st.markdown('<p class="main-header">▶️ runbox Console</p>', unsafe_allow_html=True)
    st.markdown(
        '<p class="sub-header">Run, preview and stop files in isolated workspaces</p>',
        unsafe_allow_html=True
    )

    # Validate configuration
    if not validate_config():
        return

    client = get_client()
    if not client.health():
        st.error(f"⚠️ The runbox API is not reachable at {client.base_url}.")
        st.info("Start it with `runbox-server` and reload this page.")
        return

    # Sidebar workspace selection
    with st.sidebar:
        st.header("Workspace")
        workspaces = client.workspaces()
        if not workspaces:
            st.info("No workspaces found.")
            return
        workspace_id = st.selectbox("Select workspace", options=workspaces)

        st.divider()

        st.header("Run Options")
        file = st.text_input("File", value="index.html")
        mode = st.radio("Container mode", options=["shared", "dedicated"], index=0)
        timeout_s = st.number_input("Timeout (seconds, 0 = default)", min_value=0, value=0, step=1)

        st.divider()

        if st.button("🗑️ Clear Result", use_container_width=True):
            st.session_state.last_result = None
            st.session_state.errors = []
            st.rerun()

    st.divider()

    # Control buttons
    col1, col2, col3 = st.columns(3)

    with col1:
        if st.button("▶️ Run", type="primary", use_container_width=True, key="run"):
            options = RunOptions(mode=mode, timeout_ms=int(timeout_s * 1000) or None)
            st.session_state.errors = []
            with st.spinner(f"Running {file}..."):
                try:
                    st.session_state.last_result = client.run(workspace_id, file, options)
                except NotFound:
                    st.session_state.errors = [f"{file} was not found in {workspace_id}."]
                except RunnerClientError as e:
                    st.session_state.errors = [str(e)]

    with col2:
        if st.button("🛑 Stop", use_container_width=True, key="stop"):
            with st.spinner("Stopping..."):
                client.stop(workspace_id)
                time.sleep(0.5)
            st.rerun()

    with col3:
        if st.button("🔄 Refresh Status", use_container_width=True, key="refresh"):
            st.rerun()

    display_errors()

    result_tab, status_tab, network_tab = st.tabs(["🚀 Result", "📊 Status", "🌐 Network"])

    with result_tab:
        result = st.session_state.last_result
        if result is not None and result.workspace_id == workspace_id:
            display_run_result(client, result)
        else:
            st.caption("Run a file to see its result here.")

    with status_tab:
        display_status(client.status(workspace_id))

    with network_tab:
        display_network_section(client, workspace_id)


if __name__ == "__main__":
    main()
