"""
Sitebox - Streamlit Operator Console

Create sandboxes, apply generated files with live progress, repair build
errors, browse files, preview builds and download archives.
"""

import base64
import json

import streamlit as st

from sitebox.config import ConfigError, get_config, setup_logging
from sitebox.errors import SiteboxError
from sitebox.orchestrator import SandboxService, create_service
from sitebox.schemas import FileSpec
from sitebox.utils import guess_language_from_filename


# Page configuration
st.set_page_config(
    page_title="Sitebox",
    page_icon="📦",
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
    .stTabs [data-baseweb="tab-list"] {
        gap: 8px;
    }
    .stTabs [data-baseweb="tab"] {
        padding: 8px 16px;
        background-color: #f0f2f6;
        border-radius: 8px 8px 0 0;
    }
</style>
""", unsafe_allow_html=True)


EVENT_ICONS = {
    "status": "🔄",
    "file_applied": "📄",
    "package_installed": "📦",
    "package_error": "⚠️",
    "warning": "⚠️",
    "error": "❌",
    "complete": "✅",
}


@st.cache_resource
def get_service() -> SandboxService:
    """One service per console process; recovers sandboxes on first use."""
    config = get_config()
    setup_logging(config.log_level)
    service = create_service(config)
    service.start()
    return service


def init_session_state():
    """Initialize session state variables."""
    if "sandbox_id" not in st.session_state:
        st.session_state.sandbox_id = None
    if "last_events" not in st.session_state:
        st.session_state.last_events = []
    if "last_report" not in st.session_state:
        st.session_state.last_report = None


def validate_config() -> bool:
    """Validate configuration and show error if invalid."""
    try:
        get_config()
        return True
    except ConfigError as e:
        st.error(f"⚠️ Configuration Error\n\n{str(e)}")
        st.info("Fix the `.env` file in the project root. See `.env.example` for reference.")
        return False


def parse_packages(raw: str):
    return [p.strip() for p in raw.replace("\n", ",").split(",") if p.strip()]


# =============================================================================
# SECTIONS
# =============================================================================

def display_sandboxes(service: SandboxService):
    """Sandbox list with create and delete controls."""
    st.subheader("📦 Sandboxes")

    with st.form("create_sandbox"):
        source_id = st.text_input("Source URL or app name", value="sandbox-app")
        existing_id = st.text_input("Existing sandbox ID (optional)")
        submitted = st.form_submit_button("Create / Attach", use_container_width=True)

    if submitted:
        with st.spinner("Provisioning sandbox (install and build)..."):
            try:
                created = service.create(source_id=source_id or "sandbox-app", existing_id=existing_id or None)
                st.session_state.sandbox_id = created["sandbox_id"]
                st.success(f"Sandbox ready: `{created['sandbox_id']}`\n\n{created['url']}")
            except SiteboxError as e:
                st.error(f"Could not create sandbox: {e}")
                stderr = getattr(e, "stderr", "")
                if stderr:
                    st.code(stderr, language="text")

    sandboxes = service.list()
    if not sandboxes:
        st.info("No sandboxes yet.")
        return

    for sandbox in sandboxes:
        col1, col2, col3, col4 = st.columns([4, 2, 2, 1])
        with col1:
            st.markdown(f"`{sandbox['sandbox_id']}`  \n{sandbox['source_id']}")
        with col2:
            st.write(sandbox["status"])
        with col3:
            if st.button("Select", key=f"select_{sandbox['sandbox_id']}", use_container_width=True):
                st.session_state.sandbox_id = sandbox["sandbox_id"]
                st.rerun()
        with col4:
            if st.button("🗑️", key=f"delete_{sandbox['sandbox_id']}"):
                result = service.delete(sandbox["sandbox_id"])
                if st.session_state.sandbox_id == sandbox["sandbox_id"]:
                    st.session_state.sandbox_id = None
                st.toast(result["message"])
                st.rerun()


def display_apply(service: SandboxService, sandbox_id: str):
    """Apply a batch of files with live progress."""
    st.subheader("🔨 Apply Code")

    with st.form("apply_code"):
        path = st.text_input("File path", value="src/App.jsx")
        content = st.text_area("Content", height=300)
        batch = st.text_area(
            "Or a JSON list of files",
            help='[{"path": "src/App.jsx", "content": "..."}]',
        )
        packages = st.text_input("Extra packages (comma separated)")
        auto_fix = st.checkbox("Auto-fix build errors", value=True)
        submitted = st.form_submit_button("Apply", use_container_width=True)

    if not submitted:
        display_events(st.session_state.last_events)
        return

    try:
        files = [FileSpec.model_validate(f) for f in json.loads(batch)] if batch.strip() else []
    except (ValueError, TypeError) as e:
        st.error(f"Invalid file list: {e}")
        return
    if not files and content:
        files = [FileSpec(path=path, content=content)]
    if not files:
        st.warning("Nothing to apply.")
        return

    events = []
    with st.status("Applying...", expanded=True) as status:
        for event in service.apply_stream(sandbox_id, files, parse_packages(packages), auto_fix=auto_fix):
            events.append(event)
            st.write(f"{EVENT_ICONS.get(event.type, '')} {event.message}")
            if event.type == "complete":
                status.update(label="Applied", state="complete")
            elif event.type == "error":
                status.update(label="Failed", state="error")
    st.session_state.last_events = [e.model_dump() for e in events]


def display_events(events):
    if not events:
        return
    terminal = events[-1]
    with st.expander("Last apply", expanded=terminal["type"] == "error"):
        for event in events:
            st.write(f"{EVENT_ICONS.get(event['type'], '')} {event['message']}")
        if terminal.get("data"):
            st.json(terminal["data"])


def display_auto_fix(service: SandboxService, sandbox_id: str):
    """Submit a runtime or build error for classification and repair."""
    st.subheader("🩹 Auto-fix")

    with st.form("auto_fix"):
        message = st.text_area("Error message", height=150)
        col1, col2 = st.columns(2)
        with col1:
            kind = st.text_input("Kind (optional)", help="e.g. missing-import, syntax-error")
            file = st.text_input("File (optional)")
        with col2:
            import_path = st.text_input("Import path (optional)")
            from_file = st.text_input("Imported from (optional)")
        submitted = st.form_submit_button("Fix", use_container_width=True)

    if submitted and message:
        with st.spinner("Classifying and repairing..."):
            try:
                report = service.auto_fix(sandbox_id, {
                    "message": message,
                    "kind": kind or None,
                    "file": file or None,
                    "import_path": import_path or None,
                    "from_file": from_file or None,
                })
                st.session_state.last_report = report.model_dump()
            except SiteboxError as e:
                st.error(str(e))
                return

    report = st.session_state.last_report
    if report:
        if report["phase"] == "FIXED":
            st.success(f"{report['kind']}: {report['message']}")
        else:
            st.error(f"{report['kind']}: fix failed")
            st.code(report["message"], language="text")
        with st.expander("🔍 Report"):
            st.json(report)


def display_files(service: SandboxService, sandbox_id: str):
    """Browse the sandbox source tree and download it."""
    st.subheader("📁 Files")

    tree = service.get_files(sandbox_id)
    files = tree["files"]
    if not files:
        st.warning("No source files found.")
        return

    selected = st.selectbox("File", sorted(files))
    meta = tree["manifest"]["files"].get(selected, {})
    component = meta.get("component_info")
    st.caption(
        f"{meta.get('size', 0)} bytes · modified {meta.get('last_modified') or 'unknown'}"
        + (f" · component `{component['name']}`" if component else "")
    )
    st.code(files[selected], language=guess_language_from_filename(selected), line_numbers=True)

    if st.button("📦 Prepare ZIP", use_container_width=True):
        try:
            export = service.create_zip(sandbox_id)
        except SiteboxError as e:
            st.error(str(e))
            return
        st.download_button(
            label=f"📥 Download {export.filename} ({export.size} bytes)",
            data=base64.b64decode(export.content),
            file_name=export.filename,
            mime="application/zip",
            use_container_width=True,
        )


def display_preview(service: SandboxService, sandbox_id: str):
    """Start, inspect and stop the preview server."""
    st.subheader("🌐 Preview")

    info = service.info(sandbox_id)
    st.markdown(f"Public URL: {info['url']}")

    col1, col2 = st.columns(2)
    with col1:
        if st.button("▶️ Start Preview", use_container_width=True):
            with st.spinner("Starting preview..."):
                try:
                    result = service.start_preview(sandbox_id)
                except SiteboxError as e:
                    st.error(str(e))
                    return
            if result.status == "error":
                st.error(result.message)
    with col2:
        if st.button("⏹️ Stop Preview", use_container_width=True):
            st.toast(service.stop_preview(sandbox_id).message)

    status = service.preview_status(sandbox_id)
    if status is None:
        st.info("No preview running.")
    elif status.ready:
        st.success(f"✅ Running at {status.url}")
    else:
        st.warning(status.message or f"Preview status: {status.status}")

    with st.expander("🖥️ Run Command"):
        command = st.text_input("Command", value="ls src")
        if st.button("Run", use_container_width=True):
            result = service.run_command(sandbox_id, command)
            st.write(f"Exit code: {result['exit_code']}")
            st.code(result["stdout"] or result["stderr"], language="bash")


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    init_session_state()

    # Header
    st.markdown('<p class="main-header">📦 Sitebox</p>', unsafe_allow_html=True)
    st.markdown(
        '<p class="sub-header">Provision, build and repair generated web apps</p>',
        unsafe_allow_html=True
    )

    if not validate_config():
        return

    service = get_service()

    with st.sidebar:
        st.header("Service")
        health = service.health()
        st.write(f"Status: {health['status']}")
        st.write(f"📦 Sandboxes: {health['active_sandboxes']}")
        st.write(f"🌐 Previews: {health['previews']}")

        st.divider()

        st.header("Selected Sandbox")
        if st.session_state.sandbox_id:
            st.code(st.session_state.sandbox_id, language="text")
        else:
            st.write("None")

        if st.button("🧹 Run Sweep", use_container_width=True):
            swept = service.sweep()
            st.toast(f"Removed {len(swept['sandboxes'])} idle sandboxes")

    sandbox_id = st.session_state.sandbox_id
    if sandbox_id and sandbox_id not in service.registry:
        st.session_state.sandbox_id = sandbox_id = None

    sandboxes_tab, apply_tab, fix_tab, files_tab, preview_tab = st.tabs([
        "📦 Sandboxes", "🔨 Apply", "🩹 Auto-fix", "📁 Files", "🌐 Preview",
    ])

    with sandboxes_tab:
        display_sandboxes(service)

    if not sandbox_id:
        for tab in (apply_tab, fix_tab, files_tab, preview_tab):
            with tab:
                st.info("Select or create a sandbox first.")
        return

    with apply_tab:
        display_apply(service, sandbox_id)
    with fix_tab:
        display_auto_fix(service, sandbox_id)
    with files_tab:
        display_files(service, sandbox_id)
    with preview_tab:
        display_preview(service, sandbox_id)


if __name__ == "__main__":
    main()
