"""
styles.py — AI Photobooth UI テーマ
====================================
撮影ブースらしいダーク基調 + ネオンアクセント。
"""

MAIN_CSS = """
<style>
@import url('https://fonts.googleapis.com/css2?family=M+PLUS+Rounded+1c:wght@300;400;500;700&display=swap');

/* === グローバル背景・フォント === */
.stApp {
    font-family: 'M PLUS Rounded 1c', 'Hiragino Maru Gothic Pro', sans-serif;
    background: linear-gradient(160deg, #14121c 0%, #1a1a1a 45%, #1d1626 100%) !important;
}
.stApp h1, .stApp h2, .stApp h3 {
    color: #f4ecff !important;
}
.stApp p, .stApp span, .stApp label, .stApp div {
    color: #d9d2e6;
}

/* サイドバー */
section[data-testid="stSidebar"] {
    background: linear-gradient(180deg, #1c1826 0%, #15121d 100%) !important;
    border-right: 1px solid rgba(180, 120, 255, 0.2);
}

/* ヘッダー */
.app-header {
    text-align: center;
    padding: 1.6rem 1rem 1.2rem;
    margin-bottom: 1.2rem;
    border-radius: 18px;
    background: linear-gradient(120deg, rgba(255, 64, 160, 0.18), rgba(64, 200, 255, 0.18));
    border: 1px solid rgba(255, 255, 255, 0.08);
}
.app-header h1 {
    font-size: 2.2rem;
    font-weight: 700;
    margin: 0;
    letter-spacing: 0.04em;
}
.app-header p {
    margin: 0.4rem 0 0;
    color: #bfb4d6 !important;
}

.slider-group h4 {
    margin: 0.6rem 0 0.2rem;
    font-size: 0.95rem;
    color: #e6d8ff !important;
}

.status-badge {
    display: inline-block;
    padding: 0.2rem 0.8rem;
    border-radius: 999px;
    font-size: 0.8rem;
    background: rgba(64, 200, 255, 0.15);
    border: 1px solid rgba(64, 200, 255, 0.4);
}

/* 処理統計 */
.stats-box {
    display: flex;
    flex-wrap: wrap;
    gap: 1rem;
    padding: 1rem 1.2rem;
    margin-top: 1rem;
    border-radius: 14px;
    background: rgba(255, 255, 255, 0.04);
    border: 1px solid rgba(255, 255, 255, 0.08);
}
.stats-box .stat-item {
    display: flex;
    flex-direction: column;
    min-width: 120px;
}
.stats-box .stat-label { color: rgba(217, 210, 230, 0.6) !important; font-size: 0.78rem; }
.stats-box .stat-value { color: #ff7ac6 !important; font-weight: 600; }

/* プログレスバー */
.stProgress > div > div > div {
    background: linear-gradient(90deg, #ff40a0, #40c8ff) !important;
}

/* 未撮影時 */
.welcome-area {
    text-align: center;
    padding: 3rem 1rem;
}
.welcome-area .emoji { font-size: 4rem; margin-bottom: 0.5rem; }
.welcome-area h3 {
    font-weight: 500;
    margin-bottom: 0.6rem;
}
.welcome-area p {
    line-height: 1.9;
    color: #bfb4d6 !important;
}
</style>
"""
