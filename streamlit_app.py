from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import streamlit as st

from foulreview.artifacts import ArtifactStore
from foulreview.config import DEFAULT_WORKSPACE, ReviewConfig
from foulreview.frames import FrameStore
from foulreview.pipeline import FoulReviewPipeline, new_analysis_id
from foulreview.rulebook import DEFAULT_RULES_DB, RetrievalConfig, open_rulebook_index
from foulreview.vlm import DEFAULT_ENDPOINT, DEFAULT_MODEL, GenerationConfig


VIDEO_TYPES = ["mp4", "mov", "mkv", "avi", "webm", "m4v"]


def _expand_path(value: str) -> Path:
    return Path(value).expanduser().resolve()


def _list_analysis_ids(analyses_dir: Path) -> list[int]:
    if not analyses_dir.exists():
        return []
    ids: list[int] = []
    for path in analyses_dir.glob("analysis_*.json"):
        suffix = path.stem.split("_", 1)[-1]
        if suffix.isdigit():
            ids.append(int(suffix))
    return sorted(ids, reverse=True)


def _render_frame_grid(rows: list[Mapping[str, Any]], frames_dir: Path, analysis_id: int, limit: int = 12) -> None:
    frames = FrameStore(frames_dir).frames_for(analysis_id)
    if not frames:
        st.info("No frame images found on disk for this analysis.")
        return
    by_number = {int(row.get("frameNumber", 0)): row for row in rows}
    cols = st.columns(3)
    for idx, frame in enumerate(frames[:limit]):
        row = by_number.get(frame.index, {})
        flags = ", ".join(row.get("foulIndicators", [])) or "no indicators"
        with cols[idx % 3]:
            st.image(frame.source_ref, caption=f"frame {frame.index}: {flags}", use_container_width=True)


def _render_determination(payload: Mapping[str, Any]) -> None:
    verdict = "FOUL" if payload.get("hasFoul") else "NO FOUL"
    c1, c2, c3 = st.columns(3)
    c1.metric("Ruling", verdict)
    c2.metric("Confidence", str(payload.get("confidence", "low")))
    c3.metric("Foul type", str(payload.get("foulType") or "-"))
    st.write(payload.get("explanation", ""))
    citations = payload.get("ruleCitations") or []
    if citations:
        st.markdown("#### Rule citations")
        st.dataframe(citations, use_container_width=True)
    moments = payload.get("keyMoments") or []
    if moments:
        st.markdown("#### Key moments")
        st.dataframe(moments, use_container_width=True)


def _render_result(result: Mapping[str, Any], frames_dir: Path) -> None:
    if result.get("degraded"):
        st.warning(
            f"Degraded run: fallbackMode={result.get('fallbackMode')}, "
            f"retrieval={result.get('retrievalStatus')}, determination={result.get('determinationStatus')}"
        )
    for message in result.get("warnings", []):
        st.caption(message)
    _render_determination(result.get("foulDetermination", {}))

    tabs = st.tabs(["Frames", "Summary", "Rule passages", "Raw JSON"])
    with tabs[0]:
        rows = list(result.get("analyses", []))
        _render_frame_grid(rows, frames_dir, int(result.get("analysisId", 0)))
        st.dataframe(rows, use_container_width=True)
    with tabs[1]:
        st.json(result.get("summary", {}))
        if result.get("sequenceAnalysis"):
            st.json(result["sequenceAnalysis"])
        st.caption(f"Key terms: {', '.join(result.get('keyTerms', [])) or '(none)'}")
    with tabs[2]:
        passages = result.get("rulePassages", [])
        if passages:
            st.dataframe(passages, use_container_width=True)
        else:
            st.info("No rulebook passages were used.")
    with tabs[3]:
        st.json(dict(result))


def _build_config() -> ReviewConfig:
    c1, c2 = st.columns(2)
    with c1:
        endpoint = st.text_input("VLM endpoint", value=DEFAULT_ENDPOINT)
        model = st.text_input("VLM model", value=DEFAULT_MODEL)
        workspace = st.text_input("Workspace", value=DEFAULT_WORKSPACE)
    with c2:
        rules_db = st.text_input("Rule index DB", value=DEFAULT_RULES_DB)
        use_rules = st.checkbox("Use rulebook lookup", value=True)
        sample_fps = st.number_input("Sample FPS", min_value=0.1, max_value=10.0, value=1.0, step=0.5)

    generation = GenerationConfig.from_env()
    generation.endpoint = endpoint.strip()
    generation.model = model.strip()
    config = ReviewConfig(
        workspace_dir=str(_expand_path(workspace)),
        sample_fps=float(sample_fps),
        generation=generation,
        retrieval=RetrievalConfig(db_path=str(_expand_path(rules_db)), enabled=bool(use_rules)),
    )
    config.validate()
    return config


def _render_review() -> None:
    st.title("Foul Review")
    st.caption("Upload a short clip; frames are sampled, described by the VLM and ruled on against the rulebook.")

    uploaded_video = st.file_uploader(
        "Select video file",
        type=VIDEO_TYPES,
        accept_multiple_files=False,
    )
    config = _build_config()

    if st.button("Review Play", type="primary"):
        try:
            if uploaded_video is None:
                raise ValueError("Please select a video file before running.")
            analysis_id = new_analysis_id()
            uploads = Path(config.workspace_dir) / "uploads"
            uploads.mkdir(parents=True, exist_ok=True)
            safe_name = Path(str(uploaded_video.name)).name or "video.mp4"
            video_path = uploads / f"{analysis_id}_{safe_name}"
            video_path.write_bytes(uploaded_video.getbuffer())

            with st.spinner("Extracting frames..."):
                extraction = FrameStore(config.frames_dir).extract(
                    video_path, analysis_id, sample_fps=config.sample_fps
                )
            with st.spinner(f"Reviewing {len(extraction.frames)} frames. This can take a while..."):
                result = FoulReviewPipeline.from_config(config).review(extraction.frames, analysis_id=analysis_id)
            st.session_state["last_result"] = result.to_dict()
            st.session_state["last_frames_dir"] = str(config.frames_dir)
            st.success(f"Review {analysis_id} completed.")
        except Exception as exc:
            st.error(f"Review failed: {exc}")

    result = st.session_state.get("last_result")
    if isinstance(result, Mapping):
        _render_result(result, Path(st.session_state.get("last_frames_dir", config.frames_dir)))


def _render_stored() -> None:
    st.title("Stored Analyses")
    workspace = _expand_path(st.text_input("Workspace", value=DEFAULT_WORKSPACE, key="stored_workspace"))
    store = ArtifactStore(workspace / "analyses")
    ids = _list_analysis_ids(store.root)
    if not ids:
        st.info(f"No stored analyses under `{store.root}`.")
        return
    analysis_id = st.selectbox("Analysis", options=ids, index=0)
    analysis = store.load_analysis(analysis_id)
    if analysis is None:
        st.error(f"Analysis {analysis_id} not found")
        return
    determination = store.load_determination(analysis_id)
    if determination is not None:
        _render_determination(determination)
    else:
        st.info("No determination stored for this analysis yet.")
    _render_frame_grid(list(analysis.get("analyses", [])), workspace / "frames", analysis_id)
    st.json(analysis)


def _render_rule_search() -> None:
    st.title("Rule Search")
    db_path = _expand_path(st.text_input("Rule index DB", value=DEFAULT_RULES_DB, key="search_db"))
    query = st.text_input("Query", value="blocking foul legal guarding position")
    top_k = st.number_input("Top K", min_value=1, max_value=20, value=5, step=1)
    if st.button("Search Rules"):
        if not db_path.exists():
            st.error(f"Index DB not found: `{db_path}`")
            return
        try:
            index = open_rulebook_index(RetrievalConfig(db_path=str(db_path), top_k=int(top_k)))
            passages = index.retrieve(query, top_k=int(top_k)) if index else []
        except Exception as exc:
            st.error(f"Rule search failed: {exc}")
            return
        st.dataframe([passage.to_dict() for passage in passages], use_container_width=True)


def main() -> None:
    st.set_page_config(page_title="Foul Review", layout="wide")
    mode = st.sidebar.radio("View", options=["Review Clip", "Stored Analyses", "Rule Search"], index=0)
    if mode == "Review Clip":
        _render_review()
    elif mode == "Stored Analyses":
        _render_stored()
    else:
        _render_rule_search()


if __name__ == "__main__":
    main()
