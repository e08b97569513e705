"""
GradeLab - Teacher Dashboard
Streamlit interface over the GradeLab API: records, papers, auto-grading, reports.
Run: streamlit run frontend/dashboard.py
"""

import os

import fitz  # PyMuPDF
import requests
import streamlit as st
from PIL import Image

# ─────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────

API_BASE = os.getenv("GRADELAB_API_URL", "http://localhost:8000")

st.set_page_config(
    page_title="GradeLab",
    page_icon="📝",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    .score-card {
        background: linear-gradient(135deg, #1a1a2e, #16213e);
        border-radius: 16px;
        padding: 20px;
        text-align: center;
        color: white;
    }
    .score-value { font-size: 44px; font-weight: 800; }
    .score-label { font-size: 13px; color: #90caf9; text-transform: uppercase; }
</style>
""", unsafe_allow_html=True)


# ─────────────────────────────────────────────────────────
# Sidebar Navigation
# ─────────────────────────────────────────────────────────

with st.sidebar:
    st.markdown("## 📝 GradeLab")
    st.divider()
    page = st.radio(
        "Navigate",
        ["🏠 Dashboard", "🏫 Classes", "🧑‍🎓 Students", "🗒️ Tests", "🤖 Auto-Grade", "📊 Reports",
         "🔬 Paper Analysis", "❓ Question Bank"],
        label_visibility="collapsed"
    )
    st.divider()
    st.caption(f"API: {API_BASE}")


# ─────────────────────────────────────────────────────────
# Helper Functions
# ─────────────────────────────────────────────────────────

def api_health_check():
    try:
        r = requests.get(f"{API_BASE}/health", timeout=3)
        return r.status_code == 200
    except Exception:
        return False


def api_get(path, **params):
    r = requests.get(f"{API_BASE}{path}", params=params or None, timeout=30)
    r.raise_for_status()
    return r.json()


def api_send(method, path, timeout=60, **kwargs):
    r = requests.request(method, f"{API_BASE}{path}", timeout=timeout, **kwargs)
    if r.status_code >= 400:
        try:
            body = r.json()
            message = body.get("error") or body.get("detail") or r.text
        except ValueError:
            message = r.text
        raise RuntimeError(f"{r.status_code}: {message}")
    return r.json()


def safe_get(path, default=None, **params):
    try:
        return api_get(path, **params)
    except Exception as e:
        st.error(f"Could not load {path}: {e}")
        return default


def pick(label, rows, fmt, key=None):
    """Selectbox over API rows; returns the chosen row or None."""
    if not rows:
        st.info(f"No {label.lower()} found.")
        return None
    return st.selectbox(label, rows, format_func=fmt, key=key)


def pdf_first_page_image(pdf_bytes: bytes):
    """Render first page of a PDF as a PIL Image for preview."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(1.5, 1.5))
        img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
        doc.close()
        return img
    except Exception:
        return None


def render_preview(uploaded):
    if uploaded is None:
        return
    if uploaded.name.lower().endswith(".pdf"):
        img = pdf_first_page_image(uploaded.getvalue())
        if img:
            st.image(img, caption=f"{uploaded.name} — page 1", use_container_width=True)
        else:
            st.info(f"📄 PDF selected: **{uploaded.name}**")
    else:
        st.image(uploaded.getvalue(), caption=uploaded.name, use_container_width=True)


def render_score_card(score, possible):
    pct = (score / possible) * 100 if possible else 0
    color = "#4CAF50" if pct >= 70 else "#FF9800" if pct >= 40 else "#f44336"
    st.markdown(f"""
    <div class="score-card">
        <div class="score-label">Score</div>
        <div class="score-value" style="color:{color};">{score:g}</div>
        <div style="color:#aaa;">out of {possible:g} ({pct:.1f}%)</div>
    </div>
    """, unsafe_allow_html=True)
    st.progress(min(pct / 100, 1.0))


def test_picker(key):
    tests = safe_get("/tests", default=[])
    return pick("Test", tests, lambda t: f"{t['title']} ({t['date']})", key=key)


# ─────────────────────────────────────────────────────────
# Page: Dashboard
# ─────────────────────────────────────────────────────────

if page == "🏠 Dashboard":
    st.title("🏠 GradeLab")
    if api_health_check():
        st.success("API online")
    else:
        st.error(f"API offline at {API_BASE}. Start it with `python -m gradelab.api`.")
        st.stop()

    stats = safe_get("/stats", default={})
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("Classes", stats.get("classes", 0))
    c2.metric("Students", stats.get("students", 0))
    c3.metric("Tests", stats.get("tests", 0))
    c4.metric("Graded Sheets", stats.get("graded", 0))
    c5.metric("Average %", f"{stats.get('average_percentage', 0):.1f}")

    if stats.get("agreement"):
        st.subheader("AI vs Teacher Marks")
        a = stats["agreement"]
        m1, m2, m3 = st.columns(3)
        m1.metric("MAE", a["mae"])
        m2.metric("Pearson r", a["pearson_r"])
        m3.metric("Cohen's Kappa", a["cohen_kappa"])


# ─────────────────────────────────────────────────────────
# Page: Classes
# ─────────────────────────────────────────────────────────

elif page == "🏫 Classes":
    st.title("🏫 Classes & Subjects")

    with st.expander("➕ New class"):
        with st.form("new_class"):
            name = st.text_input("Class name")
            year = st.text_input("Academic year", value="2024")
            grade = st.text_input("Grade / section")
            department = st.text_input("Department")
            if st.form_submit_button("Create class") and name:
                try:
                    api_send("POST", "/classes", json={"name": name, "year": year,
                                                       "grade": grade or None, "department": department or None})
                    st.success(f"Created class {name}")
                except Exception as e:
                    st.error(str(e))

    classes = safe_get("/classes", default=[])
    chosen = pick("Class", classes, lambda c: f"{c['name']} ({c['year']})")
    if chosen:
        detail = safe_get(f"/classes/{chosen['id']}", default={})
        st.subheader("Subjects")
        st.dataframe([{"Name": s["name"], "Code": s["code"], "Semester": s.get("semester")}
                      for s in detail.get("subjects", [])], use_container_width=True, hide_index=True)

        with st.form("new_subject"):
            s_name = st.text_input("Subject name")
            s_code = st.text_input("Subject code")
            semester = st.text_input("Semester")
            if st.form_submit_button("Add subject") and s_name and s_code:
                try:
                    api_send("POST", "/subjects", json={"name": s_name, "code": s_code,
                                                        "class_id": chosen["id"], "semester": semester or None})
                    st.success(f"Added {s_name}")
                except Exception as e:
                    st.error(str(e))

        st.subheader("Students")
        students = safe_get("/students", default=[], class_id=chosen["id"])
        st.dataframe([{"Name": s["name"], "Roll": s["roll_number"], "GR": s["gr_number"]}
                      for s in students], use_container_width=True, hide_index=True)

        if st.button("🗑️ Delete class", type="secondary"):
            try:
                resp = api_send("DELETE", f"/classes/{chosen['id']}")
                st.success(f"Deleted. {resp['unassigned_students']} students are now unassigned.")
            except Exception as e:
                st.error(str(e))


# ─────────────────────────────────────────────────────────
# Page: Students
# ─────────────────────────────────────────────────────────

elif page == "🧑‍🎓 Students":
    st.title("🧑‍🎓 Students")
    classes = safe_get("/classes", default=[])
    class_names = {c["id"]: c["name"] for c in classes}

    tab_list, tab_add, tab_import = st.tabs(["List", "Add", "Import CSV"])

    with tab_list:
        filter_options = [None] + [c["id"] for c in classes]
        class_filter = st.selectbox("Class", filter_options,
                                    format_func=lambda cid: "All" if cid is None else class_names[cid])
        students = safe_get("/students", default=[], **({"class_id": class_filter} if class_filter else {}))
        st.dataframe([{
            "Name": s["name"], "Roll": s["roll_number"], "GR": s["gr_number"],
            "Class": class_names.get(s["class_id"], "—"), "Email": s.get("email"),
        } for s in students], use_container_width=True, hide_index=True)

    with tab_add:
        with st.form("new_student"):
            c1, c2 = st.columns(2)
            name = c1.text_input("Name")
            gr_number = c2.text_input("GR number")
            roll_number = c1.text_input("Roll number")
            year = c2.text_input("Year")
            gender = c1.selectbox("Gender", ["Male", "Female", "Other"])
            email = c2.text_input("Email")
            class_id = st.selectbox("Class", [None] + [c["id"] for c in classes],
                                    format_func=lambda cid: "Unassigned" if cid is None else class_names[cid])
            if st.form_submit_button("Add student") and name and gr_number and roll_number:
                try:
                    api_send("POST", "/students", json={
                        "name": name, "gr_number": gr_number, "roll_number": roll_number,
                        "year": year or None, "gender": gender, "email": email or None, "class_id": class_id,
                    })
                    st.success(f"Added {name}")
                except Exception as e:
                    st.error(str(e))

    with tab_import:
        try:
            template = requests.get(f"{API_BASE}/students/template", timeout=5).text
            st.download_button("⬇️ CSV template", data=template, file_name="students_template.csv", mime="text/csv")
        except Exception:
            pass
        csv_file = st.file_uploader("Students CSV", type=["csv"])
        if csv_file and st.button("Import"):
            try:
                resp = api_send("POST", "/students/import",
                                files={"file": (csv_file.name, csv_file.getvalue(), "text/csv")})
                st.success(f"Imported {resp['created']} students")
                for err in resp["errors"]:
                    st.warning(err)
            except Exception as e:
                st.error(str(e))


# ─────────────────────────────────────────────────────────
# Page: Tests
# ─────────────────────────────────────────────────────────

elif page == "🗒️ Tests":
    st.title("🗒️ Tests & Results")
    classes = safe_get("/classes", default=[])

    with st.expander("➕ New test"):
        klass = pick("Class", classes, lambda c: c["name"], key="test_class")
        if klass:
            subjects = safe_get(f"/classes/{klass['id']}/subjects", default=[])
            subject = pick("Subject", subjects, lambda s: f"{s['name']} ({s['code']})", key="test_subject")
            with st.form("new_test"):
                title = st.text_input("Title")
                date = st.date_input("Date")
                max_marks = st.number_input("Max marks", min_value=1.0, value=100.0)
                if st.form_submit_button("Create test") and title and subject:
                    try:
                        api_send("POST", "/tests", json={
                            "title": title, "date": date.isoformat(), "max_marks": max_marks,
                            "subject_id": subject["id"], "class_id": klass["id"],
                        })
                        st.success(f"Created {title}")
                    except Exception as e:
                        st.error(str(e))

    test = test_picker("tests_page")
    if test:
        st.caption(f"{test['subject']['name'] if test.get('subject') else ''} · "
                   f"{test['class']['name'] if test.get('class') else ''} · max {test['max_marks']:g}")
        results = safe_get(f"/tests/{test['id']}/results", default=[])
        st.dataframe([{
            "Student": r["student"]["name"] if r.get("student") else r["student_id"],
            "Roll": r["student"]["roll_number"] if r.get("student") else "",
            "Marks": r["marks_obtained"],
        } for r in results], use_container_width=True, hide_index=True)

        try:
            csv_text = requests.get(f"{API_BASE}/tests/{test['id']}/results/export", timeout=10).text
            st.download_button("⬇️ Export results (CSV)", data=csv_text,
                               file_name=f"{test['title']}_results.csv", mime="text/csv")
        except Exception:
            pass


# ─────────────────────────────────────────────────────────
# Page: Auto-Grade
# ─────────────────────────────────────────────────────────

elif page == "🤖 Auto-Grade":
    st.title("🤖 Auto-Grade")
    test = test_picker("grade_page")
    if not test:
        st.stop()
    test_id = test["id"]

    st.subheader("1 — Question paper & answer key")
    papers = safe_get("/papers", default=[], test_id=test_id)
    for p in papers:
        c1, c2, c3, c4 = st.columns([3, 1, 1, 1])
        c1.write(f"**{p['title']}** · {p['paper_type']} · {p['status']}")
        if c2.button("Extract", key=f"ex_{p['id']}"):
            with st.spinner("Extracting text..."):
                try:
                    api_send("POST", f"/papers/{p['id']}/extract", timeout=600)
                    st.success("Text extracted")
                except Exception as e:
                    st.error(str(e))
        if p["paper_type"] == "question" and p["has_extracted_text"] and c3.button("Answer key", key=f"ak_{p['id']}"):
            with st.spinner("Generating answer key..."):
                try:
                    api_send("POST", "/generate-answer-key", json={"paperId": p["id"]}, timeout=300)
                    st.success("Answer key generated")
                except Exception as e:
                    st.error(str(e))
        if c4.button("🗑️", key=f"del_{p['id']}"):
            try:
                api_send("DELETE", f"/papers/{p['id']}")
                st.success("Deleted")
            except Exception as e:
                st.error(str(e))

    with st.form("upload_paper"):
        paper_file = st.file_uploader("Paper (PDF or image)", type=["pdf", "png", "jpg", "jpeg"])
        paper_type = st.radio("Type", ["question", "answer"], horizontal=True)
        suffix = "Question Paper" if paper_type == "question" else "Answer Key"
        if st.form_submit_button("Upload paper") and paper_file:
            try:
                api_send("POST", "/papers",
                         files={"file": (paper_file.name, paper_file.getvalue(), paper_file.type)},
                         data={"title": f"{test['title']} - {suffix}", "paper_type": paper_type, "test_id": test_id})
                st.success("Uploaded")
            except Exception as e:
                st.error(str(e))

    st.subheader("2 — Rubric")
    rubric = safe_get(f"/tests/{test_id}/rubric", default={})
    with st.form("rubric"):
        cols = st.columns(5)
        levels = {}
        for col, criterion in zip(cols, ["accuracy", "relevance", "clarity", "structure", "language"]):
            levels[criterion] = col.slider(criterion.capitalize(), 1, 5, int(rubric.get(criterion, 3)))
        if st.form_submit_button("Save rubric"):
            try:
                api_send("PUT", f"/tests/{test_id}/rubric", json=levels)
                st.success("Rubric saved")
            except Exception as e:
                st.error(str(e))

    st.subheader("3 — Students")
    statuses = safe_get(f"/tests/{test_id}/grading-status", default=[])
    if statuses and st.button("⚡ Grade all extracted sheets"):
        try:
            resp = api_send("POST", f"/tests/{test_id}/evaluate-all")
            st.info(f"Queued {resp['queued']} students. Refresh to follow progress.")
        except Exception as e:
            st.error(str(e))

    for row in statuses:
        with st.expander(f"{row['student_name']} ({row['roll_number']}) — {row['status']}"
                         + (f" · {row['score']:g}" if row["score"] is not None else "")):
            sheet = st.file_uploader("Answer sheet", type=["pdf", "png", "jpg", "jpeg"], key=f"up_{row['student_id']}")
            render_preview(sheet)
            c1, c2, c3 = st.columns(3)
            if sheet and c1.button("Upload", key=f"upb_{row['student_id']}"):
                try:
                    api_send("POST", f"/tests/{test_id}/students/{row['student_id']}/answer-sheet",
                             files={"file": (sheet.name, sheet.getvalue(), sheet.type)})
                    st.success("Sheet uploaded")
                except Exception as e:
                    st.error(str(e))
            if row["answer_sheet_id"] and c2.button("Extract", key=f"exs_{row['student_id']}"):
                with st.spinner("Extracting..."):
                    try:
                        api_send("POST", f"/answer-sheets/{row['answer_sheet_id']}/extract", timeout=600)
                        st.success("Text extracted")
                    except Exception as e:
                        st.error(str(e))
            if row["has_extracted_text"] and c3.button("Evaluate", key=f"ev_{row['student_id']}"):
                with st.spinner("🤖 Grading (30–90 seconds)..."):
                    try:
                        api_send("POST", f"/tests/{test_id}/students/{row['student_id']}/evaluate", timeout=600)
                        st.success("Graded")
                    except Exception as e:
                        st.error(str(e))

            if row["status"] == "completed":
                evaluation = safe_get(f"/tests/{test_id}/students/{row['student_id']}/evaluation", default={})
                result = evaluation.get("evaluation_result") or {}
                answers = result.get("answers", [])
                possible = sum(a["score"][1] for a in answers)
                render_score_card(evaluation.get("score") or 0, possible)
                perf = result.get("overall_performance", {})
                st.write(perf.get("personalized_summary", ""))
                st.dataframe([{
                    "Q": a["question_no"], "Score": f"{a['score'][0]:g}/{a['score'][1]:g}",
                    "Remarks": a.get("remarks", ""),
                } for a in answers], use_container_width=True, hide_index=True)


# ─────────────────────────────────────────────────────────
# Page: Reports
# ─────────────────────────────────────────────────────────

elif page == "📊 Reports":
    st.title("📊 Reports")
    test = test_picker("report_page")
    if test:
        report = safe_get(f"/tests/{test['id']}/report", default={})
        overview = report.get("overview", {})
        c1, c2, c3, c4, c5 = st.columns(5)
        c1.metric("Graded", overview.get("graded", 0))
        c2.metric("Average %", overview.get("average_percentage", 0))
        c3.metric("Highest %", overview.get("highest_percentage", 0))
        c4.metric("Lowest %", overview.get("lowest_percentage", 0))
        c5.metric("Pass rate %", overview.get("pass_rate", 0))

        st.subheader("Grade distribution")
        st.bar_chart(overview.get("grade_distribution", {}))

        st.subheader("Question analysis")
        st.dataframe(report.get("questions", []), use_container_width=True, hide_index=True)

        if report.get("agreement"):
            st.subheader("AI vs teacher marks")
            st.json(report["agreement"])


# ─────────────────────────────────────────────────────────
# Page: Paper Analysis
# ─────────────────────────────────────────────────────────

elif page == "🔬 Paper Analysis":
    st.title("🔬 Paper Analysis")
    subject = pick("Subject", safe_get("/subjects", default=[]), lambda s: f"{s['name']} ({s['code']})",
                   key="analysis_subject")
    if not subject:
        st.stop()

    with st.expander("Course outcomes"):
        for co in safe_get(f"/subjects/{subject['id']}/course-outcomes", default=[]):
            c1, c2 = st.columns([6, 1])
            c1.write(f"**{co['label']}** {co['description']}")
            if c2.button("🗑️", key=f"co_{co['id']}"):
                api_send("DELETE", f"/course-outcomes/{co['id']}")
                st.rerun()
        with st.form("add_co", clear_on_submit=True):
            description = st.text_input("New course outcome")
            if st.form_submit_button("Add") and description:
                api_send("POST", f"/subjects/{subject['id']}/course-outcomes", json={"description": description})
                st.rerun()

    papers = [p for p in safe_get("/papers", default=[], paper_type="question") if p["has_extracted_text"]]
    paper = pick("Extracted question paper", papers, lambda p: p["title"], key="analysis_paper")
    if not paper:
        st.stop()

    if st.button("🔬 Analyse paper"):
        with st.spinner("Classifying questions..."):
            try:
                api_send("POST", f"/papers/{paper['id']}/analyze", json={}, timeout=300)
                st.success("Analysis complete")
            except Exception as e:
                st.error(str(e))

    history = safe_get(f"/papers/{paper['id']}/analyses", default=[])
    run = pick("Analysis run", history, lambda a: f"{a['created_at'][:16]} · {a['status']}", key="analysis_run")
    if run and run["status"] == "failed":
        st.error(run.get("error") or "Analysis failed")
    elif run and run["status"] == "completed":
        data = run["analysis_data"]
        c1, c2, c3 = st.columns(3)
        c1.metric("Questions", data["totalQuestions"])
        c2.metric("Bloom's levels", f"{data['bloomsLevelsCovered']}/{data['totalBloomsLevels']}")
        c3.metric("Course outcomes", f"{data['courseOutcomesCovered']}/{data['totalCourseOutcomes']}")

        c1, c2 = st.columns(2)
        c1.subheader("Bloom's taxonomy %")
        c1.bar_chart(data["bloomsDistribution"])
        c2.subheader("Difficulty %")
        c2.bar_chart(data["difficultyDistribution"])
        if data["courseOutcomeDistribution"]:
            st.subheader("Course outcomes %")
            st.bar_chart(data["courseOutcomeDistribution"])

        st.dataframe(data["questions"], use_container_width=True, hide_index=True)
        for s in data.get("suggestions", []):
            st.markdown(f"- **{s['title']}** {s['description']}")

        try:
            pdf = requests.get(f"{API_BASE}/analyses/{run['id']}/report.pdf", timeout=60).content
            st.download_button("📄 Download PDF report", pdf, file_name=f"{paper['title']}_analysis.pdf",
                               mime="application/pdf")
        except requests.RequestException as e:
            st.error(f"Could not build the report: {e}")


# ─────────────────────────────────────────────────────────
# Page: Question Bank
# ─────────────────────────────────────────────────────────

elif page == "❓ Question Bank":
    st.title("❓ Question Bank")
    subject = pick("Subject", safe_get("/subjects", default=[]), lambda s: f"{s['name']} ({s['code']})",
                   key="bank_subject")
    if not subject:
        st.stop()

    materials = [m for m in safe_get(f"/subjects/{subject['id']}/materials", default=[]) if m["has_extracted_text"]]
    with st.form("generate_questions"):
        topic = st.text_input("Topic")
        question_type = st.radio("Type", ["mcq", "theory", "mixed"], horizontal=True)
        c1, c2, c3, c4, c5 = st.columns(5)
        mcq_count = c1.number_input("MCQs", 0, 200, 10)
        marks = {f"mark{m}Questions": col.number_input(f"{m}-mark", 0, 100, 0)
                 for m, col in zip((1, 2, 4, 8), (c2, c3, c4, c5))}
        difficulty = st.slider("Difficulty", 0, 100, 50)
        chosen = st.multiselect("Chapter materials", materials, format_func=lambda m: m["title"])
        if st.form_submit_button("✨ Generate") and topic:
            with st.spinner("Generating questions..."):
                try:
                    resp = api_send("POST", "/generate-questions", timeout=900, json={
                        "subjectId": subject["id"], "topic": topic, "questionType": question_type,
                        "mcqCount": mcq_count, "theoryDistribution": marks, "difficulty": difficulty,
                        "materialIds": [m["id"] for m in chosen],
                    })
                    st.success(f"Generated {len(resp['questions'])} questions")
                except Exception as e:
                    st.error(str(e))

    for session in [s for s in safe_get("/questions/sessions", default=[]) if s["subject_id"] == subject["id"]]:
        with st.expander(f"{session['topic']} · {session['count']} questions · {session['last_generated'][:10]}"):
            questions = safe_get("/questions", default=[], subject_id=subject["id"], topic=session["topic"])
            for q in questions:
                label = f"{q['marks']} marks" if q["question_type"] == "Theory" else "MCQ"
                st.markdown(f"**{q['question_text']}** ({label}, {q['bloom_level']})")
                for option in q.get("options") or []:
                    st.write(("✅ " if option["is_correct"] else "▫️ ") + option["text"])
                if q["question_type"] == "Theory" and q.get("answer_text"):
                    st.caption(q["answer_text"])
            if st.button("🗑️ Delete session", key=f"ds_{session['id']}"):
                api_send("POST", "/questions/delete", json={"ids": session["question_ids"]})
                st.rerun()
