"""
AI Photobooth 📸
=================
顔はそのまま、背景と衣装を AI で生成するフォトブース
"""

import asyncio
import logging
import time

import streamlit as st

from styles import MAIN_CSS

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ============================================================
# ページ設定
# ============================================================
st.set_page_config(
    page_title="AI Photobooth 📸",
    page_icon="📸",
    layout="wide",
    initial_sidebar_state="expanded",
)
st.markdown(MAIN_CSS, unsafe_allow_html=True)


# ============================================================
# ヘッダー
# ============================================================
st.markdown("""
<div class="app-header">
    <h1>📸 AI フォトブース</h1>
    <p>お顔はそのままに、好きな世界へ ✨</p>
</div>
""", unsafe_allow_html=True)

# 1 セッションあたりの撮影回数
MAX_USER_ATTEMPTS = 3


# ============================================================
# キャッシュ: シングルトン
# ============================================================
@st.cache_resource
def get_settings():
    from photobooth.config import PipelineSettings
    return PipelineSettings.from_env()


@st.cache_resource
def get_gallery():
    from photobooth.stores import LocalGalleryStore
    return LocalGalleryStore(get_settings().gallery_dir)


@st.cache_resource
def get_orchestrator():
    from photobooth.face_detector import get_landmark_provider
    from photobooth.pipeline import GenerationOrchestrator
    from photobooth.stores import JsonOverlayStore
    from providers.factory import create_service

    settings = get_settings()
    return GenerationOrchestrator(
        service=create_service(settings),
        settings=settings,
        landmark_provider=get_landmark_provider(),
        overlay_store=JsonOverlayStore(settings.overlay_config_path),
        gallery_store=get_gallery(),
    )


if "attempts_left" not in st.session_state:
    st.session_state["attempts_left"] = MAX_USER_ATTEMPTS


# ============================================================
# サイドバー
# ============================================================
with st.sidebar:
    st.markdown("## 📷 写真を撮る")
    source = st.radio("入力方法", ["カメラ", "ファイル"], horizontal=True)
    if source == "カメラ":
        photo = st.camera_input("カメラで撮影")
    else:
        photo = st.file_uploader(
            "写真をドラッグ＆ドロップ",
            type=["jpg", "jpeg", "png", "webp"],
            help="JPEG / PNG / WebP に対応しています",
        )

    st.markdown("---")
    st.markdown('<div class="slider-group"><h4>🎨 どんな世界にする？</h4></div>',
                unsafe_allow_html=True)
    prompt = st.text_area(
        "プロンプト",
        value=get_settings().default_prompt,
        height=100,
    )
    mode_label = st.radio(
        "お顔の扱い",
        ["お顔をそのまま残す", "お顔も作り変える"],
        help="「そのまま残す」は背景と衣装だけを生成します",
    )

    st.markdown("---")
    left = st.session_state["attempts_left"]
    st.markdown(f'<span class="status-badge">のこり {left} 回</span>',
                unsafe_allow_html=True)
    run = st.button(
        "✨ 生成する",
        type="primary",
        use_container_width=True,
        disabled=(photo is None or left <= 0),
    )


# ============================================================
# メイン
# ============================================================
if photo is not None and run:
    from photobooth.errors import GenerationFailed, ProviderError
    from photobooth.image_io import decode_image, encode_jpeg
    from photobooth.types import FaceMode, PipelineStage

    mode = (
        FaceMode.PRESERVE_FACE
        if mode_label == "お顔をそのまま残す"
        else FaceMode.REPLACE_FACE
    )
    image_bytes = photo.getvalue()

    progress = st.progress(0, text="📷 写真を準備しています...")
    stage_icons = {
        PipelineStage.PREPARING: "📷",
        PipelineStage.DETECTING: "🔍",
        PipelineStage.MASKING: "🎭",
        PipelineStage.GENERATING: "🎨",
        PipelineStage.VALIDATING: "🔎",
        PipelineStage.RETRYING: "🔁",
        PipelineStage.FALLING_BACK: "🔀",
        PipelineStage.UPLOADING: "☁️",
        PipelineStage.SUCCEEDED: "✅",
        PipelineStage.FAILED: "⚠️",
    }

    def on_progress(event):
        progress.progress(event.percent, text=f"{stage_icons[event.stage]} {event.message}")

    t_start = time.time()
    try:
        orchestrator = get_orchestrator()
        result = asyncio.run(
            orchestrator.capture_and_store(image_bytes, prompt, mode, on_progress=on_progress)
        )
    except GenerationFailed as e:
        st.session_state["attempts_left"] = max(left - 1, 0)
        st.error(e.user_message)
        st.stop()
    except ProviderError as e:
        # 認証情報の不足などでサービスを作れなかった
        st.error(e.user_message)
        st.stop()

    st.session_state["attempts_left"] = max(left - 1, 0)
    t_elapsed = (time.time() - t_start) * 1000

    # ============================================================
    # 結果表示: ビフォー / アフター
    # ============================================================
    st.markdown("### 📸 ビフォー / アフター")
    col1, col2 = st.columns(2)

    with col1:
        st.markdown("**もとの写真**")
        st.image(image_bytes, use_container_width=True)

    with col2:
        st.markdown("**生成結果 ✨**")
        st.image(result.encoded_image, use_container_width=True)

    # ============================================================
    # ダウンロード
    # ============================================================
    dl1, dl2 = st.columns(2)
    with dl1:
        st.download_button(
            label="📥 PNG でダウンロード",
            data=result.encoded_image,
            file_name="photobooth.png",
            mime="image/png",
            use_container_width=True,
        )
    with dl2:
        st.download_button(
            label="📥 JPEG でダウンロード",
            data=encode_jpeg(decode_image(result.encoded_image), quality=95),
            file_name="photobooth.jpg",
            mime="image/jpeg",
            use_container_width=True,
        )

    if result.overlay_error:
        st.caption("⚠️ フレームの合成に失敗したため、フレームなしで表示しています")
    if result.record is None:
        st.caption("⚠️ ギャラリーへの保存に失敗しました")

    try:
        gallery_count = len(get_gallery().list_records())
    except (OSError, ValueError, KeyError) as e:
        logging.getLogger(__name__).warning("[App] ギャラリー一覧の読み込みに失敗: %s", e)
        gallery_count = "-"

    # ============================================================
    # 処理統計
    # ============================================================
    st.markdown(f"""
    <div class="stats-box">
        <div class="stat-item">
            <span class="stat-label">検出された顔</span>
            <span class="stat-value">{result.faces_detected} 人</span>
        </div>
        <div class="stat-item">
            <span class="stat-label">生成方式</span>
            <span class="stat-value">{result.operation.value}{' (フォールバック)' if result.fell_back else ''}</span>
        </div>
        <div class="stat-item">
            <span class="stat-label">試行回数</span>
            <span class="stat-value">{result.attempts_used} 回</span>
        </div>
        <div class="stat-item">
            <span class="stat-label">処理時間</span>
            <span class="stat-value">{t_elapsed:.0f} ms</span>
        </div>
        <div class="stat-item">
            <span class="stat-label">ギャラリー</span>
            <span class="stat-value">{gallery_count} 枚</span>
        </div>
    </div>
    """, unsafe_allow_html=True)

else:
    # 未撮影時
    st.markdown("""
    <div class="welcome-area">
        <p class="emoji">📸</p>
        <h3>写真を撮ってはじめましょう</h3>
        <p>
            左のサイドバーで撮影またはアップロードして<br>
            好きな世界をプロンプトで書いて<br>
            「✨ 生成する」を押してください
        </p>
    </div>
    """, unsafe_allow_html=True)
