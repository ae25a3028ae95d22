# Main (Home) page content for Pandoc Web.
import json
import os
import time

import requests
import streamlit as st

API_BASE = os.getenv("API_BASE", "http://localhost:8000")
POLL_INTERVAL_SECONDS = 1.0
POLL_MAX_SECONDS = 300

# Fallback when /formats is unreachable; the API remains the source of truth
_FALLBACK_SOURCES = [("markdown", "Markdown (.md)"), ("gfm", "GitHub-Flavored Markdown (.md)"), ("html", "HTML (.html)")]
_FALLBACK_DESTS = [("pdf", "Adobe PDF (.pdf)"), ("html", "HTML (.html)"), ("docx", "Microsoft Word (.docx)")]
_TEMPLATE_DESTS = {"docx", "odt", "pptx"}


def _status_badge(label: str, color: str) -> None:
    """Render a colored status badge (red = failed, green = done, gray = in progress)."""
    st.markdown(
        f'<div style="background:{color};color:white;padding:6px 14px;border-radius:6px;'
        'display:inline-block;font-weight:500;">{}</div>'.format(label),
        unsafe_allow_html=True,
    )


def get_json(path: str, params: dict = None):
    """GET API path and return the response."""
    url = f"{API_BASE}{path}"
    return requests.get(url, params=params, timeout=30)


def pretty_json(obj):
    """Return a pretty-printed JSON string for display."""
    return json.dumps(obj, indent=2, ensure_ascii=False)


def _error_message(r) -> str:
    """Error text from the API's JSON error body, or the raw body."""
    try:
        body = r.json()
        return f"{body.get('error', 'Something went wrong.')} ({body.get('code', r.status_code)})"
    except ValueError:
        return r.text or f"HTTP {r.status_code}"


@st.cache_data(ttl=300, show_spinner=False)
def load_formats():
    """Source/destination (value, label) lists from GET /formats."""
    try:
        r = get_json("/formats")
        r.raise_for_status()
        data = r.json()
        sources = [(f["value"], f["label"]) for f in data["source_formats"]]
        dests = [(f["value"], f["label"]) for f in data["dest_formats"]]
        templates = {f["value"] for f in data["dest_formats"] if f.get("supports_template")}
        return sources, dests, templates
    except (requests.exceptions.RequestException, ValueError, KeyError):
        return _FALLBACK_SOURCES, _FALLBACK_DESTS, _TEMPLATE_DESTS


def post_upload(uploaded_file, template_file, fields: dict):
    """POST multipart file (+ optional template) and form fields to /upload."""
    url = f"{API_BASE}/upload"
    files = [("file", (uploaded_file.name, uploaded_file.getvalue(), "application/octet-stream"))]
    if template_file is not None:
        files.append(("template", (template_file.name, template_file.getvalue(), "application/octet-stream")))
    return requests.post(url, data=fields, files=files, timeout=120)


def poll_status(job_id: str, progress) -> dict:
    """Poll GET /status once per second until the job has a terminal outcome."""
    deadline = time.monotonic() + POLL_MAX_SECONDS
    while time.monotonic() < deadline:
        r = get_json("/status", {"job": job_id})
        if r.status_code != 200:
            return {"success": False, "error": _error_message(r)}
        status = r.json().get("status", {})
        if status.get("success") is not None or status.get("scrapbox"):
            return status
        progress.caption(f"Converting… job {job_id}")
        time.sleep(POLL_INTERVAL_SECONDS)
    return {"success": False, "error": "Timed out waiting for the conversion."}


def option_fields(toc, toc_depth, number_sections, no_yaml, embed_resources, ref_loc, fig_pos, tbl_pos) -> dict:
    """Form fields for /upload; booleans are sent as the string "true" only when enabled."""
    fields = {}
    if toc:
        fields["toc"] = "true"
        fields["tocDepth"] = str(toc_depth)
    if number_sections:
        fields["numberSections"] = "true"
    if no_yaml:
        fields["noYaml"] = "true"
    if embed_resources:
        fields["embedResources"] = "true"
    if ref_loc:
        fields["referenceLocation"] = ref_loc
    if fig_pos:
        fields["figureCaptionPosition"] = fig_pos
    if tbl_pos:
        fields["tableCaptionPosition"] = tbl_pos
    return fields


def run_main() -> None:
    """Render the Home page (upload, convert, download)."""
    st.set_page_config(page_title="Pandoc Web", layout="centered", initial_sidebar_state="collapsed")
    st.title("📄 Pandoc Web")
    st.caption("Convert documents between formats with pandoc.")

    sources, dests, template_dests = load_formats()

    # -------------------------
    # Formats
    # -------------------------
    st.subheader("Formats")
    col_from, col_to = st.columns(2)
    with col_from:
        source_choice = st.selectbox(
            "From",
            options=[""] + [v for v, _ in sources],
            format_func=lambda v: dict(sources).get(v, "Auto-detect"),
            key="source_format",
        )
    with col_to:
        dest_choice = st.selectbox(
            "To",
            options=[v for v, _ in dests],
            format_func=lambda v: dict(dests).get(v, v),
            key="dest_format",
        )

    # -------------------------
    # Options
    # -------------------------
    with st.expander("Options"):
        toc = st.checkbox("Table of contents", key="opt_toc")
        toc_depth = st.slider("TOC depth", 1, 6, 3, key="opt_toc_depth", disabled=not toc)
        number_sections = st.checkbox("Number sections", key="opt_number_sections")
        no_yaml = st.checkbox(
            "Disable YAML metadata",
            key="opt_no_yaml",
            help="Markdown sources only. Use when frontmatter breaks the conversion.",
        )
        embed_resources = st.checkbox("Embed resources (standalone)", key="opt_embed")
        ref_loc = st.selectbox("Footnote location", ["", "block", "section", "document"], key="opt_ref_loc")
        fig_pos = st.selectbox("Figure caption position", ["", "above", "below"], key="opt_fig_pos")
        tbl_pos = st.selectbox("Table caption position", ["", "above", "below"], key="opt_tbl_pos")

    # -------------------------
    # Upload
    # -------------------------
    st.subheader("Upload")
    uploaded_file = st.file_uploader("Choose a document", accept_multiple_files=False, key="main_upload")
    template_file = None
    if dest_choice in template_dests:
        template_file = st.file_uploader(
            "Reference document (optional)",
            accept_multiple_files=False,
            key="template_upload",
            help="Styles, headers and page setup are taken from this document.",
        )

    if st.button("🔄 Convert", key="convert_btn", disabled=uploaded_file is None):
        fields = option_fields(toc, toc_depth, number_sections, no_yaml, embed_resources, ref_loc, fig_pos, tbl_pos)
        fields["format"] = dest_choice
        if source_choice:
            fields["sourceFormat"] = source_choice

        st.session_state.result = None
        with st.spinner(""):
            try:
                r = post_upload(uploaded_file, template_file, fields)
            except requests.exceptions.RequestException as e:
                st.error(f"Could not reach the API: {e}")
                st.stop()
            if r.status_code != 200:
                st.error(_error_message(r))
                st.stop()
            job_id = r.json().get("name", "")
            status = poll_status(job_id, st.empty())
        st.session_state.result = {"job": job_id, "status": status, "dest": dest_choice, "name": uploaded_file.name}

    # -------------------------
    # Result
    # -------------------------
    result = st.session_state.get("result")
    if not result:
        return

    status = result["status"]
    if status.get("scrapbox"):
        _status_badge("Scrapbox export detected", "#6c757d")
        st.info("This file is a Scrapbox project export; it is not converted by pandoc.")
    elif status.get("success"):
        _status_badge("✓ Conversion complete", "#28a745")
        r = get_json("/download", {"job": result["job"]})
        if r.status_code == 200:
            stem = os.path.splitext(result["name"])[0] or "converted"
            ext = status.get("result", "").rsplit(".", 1)[-1] or result["dest"]
            st.download_button(
                f"Download {stem}.{ext}",
                data=r.content,
                file_name=f"{stem}.{ext}",
                mime=r.headers.get("content-type", "application/octet-stream"),
                key="download_result",
            )
        else:
            st.error(_error_message(r))
        # output is removed server-side once downloaded
        st.session_state.result = None
    else:
        _status_badge("Conversion failed", "#dc3545")
        st.error(status.get("error") or "Something went wrong.")
        with st.expander("Details"):
            st.code(pretty_json(status), language="json")


if __name__ == "__main__":
    run_main()
