# GradeLab - Prompt Templates
# Used by extraction.py (page OCR), llm_evaluator.py (grading, answer keys) and
# analysis.py (paper analysis, question generation).

# ─────────────────────────────────────────────────────────
# TEXT EXTRACTION (vision)
# ─────────────────────────────────────────────────────────

EXTRACTION_BASE_SYSTEM = (
    "You are an expert at extracting text from educational documents with PERFECT accuracy. "
    "Your task is CRITICAL - extract EVERY SINGLE DETAIL visible in the document without missing anything."
)

EXTRACTION_TYPE_SYSTEM = {
    "student-sheet": (
        " MCQ EXTRACTION: For student answer sheets, carefully observe and extract MCQ circles and answer "
        "selections exactly as they appear. Look for circles, ovals, checkmarks, or any marks around answer "
        "options (A, B, C, D). Also extract: handwritten content, mathematical equations, diagrams, question "
        "numbers, student responses, any marks or annotations, erased answers, partial answers, and ALL visible text."
    ),
    "answer": (
        " COMPREHENSIVE EXTRACTION: For answer keys, extract EVERY detail including: question numbers, ALL answer "
        "options (A, B, C, D), correct answers, mathematical equations and formulas, step-by-step solutions, "
        "marking schemes, point distributions, any explanatory text, diagrams, and ALL visible content."
    ),
    "question": (
        " COMPLETE EXTRACTION: For question papers, extract EVERY element: questions and their complete "
        "structure, ALL answer options (A, B, C, D), mathematical equations and formulas, diagrams and visual "
        "elements, instructions, question numbers, marks allocation, and ANY other visible text."
    ),
    "chapter-material": (
        " STUDY MATERIAL EXTRACTION: For chapter material, extract headings, paragraphs, definitions, worked "
        "examples, tables, figure captions and exercises in reading order, keeping the heading hierarchy."
    ),
}

EXTRACTION_SHARED_SYSTEM = (
    " DIAGRAM EXTRACTION: Convert ALL diagrams, flowcharts and schematics to Mermaid format using ```mermaid "
    "code blocks. Use [Node Name] for processes, {Decision?} for decision points and arrows like -->. If you "
    "are unsure of the diagram type, use 'graph TD'. If you cannot clearly see all elements of a diagram, "
    "describe it in text instead of writing invalid Mermaid. "
    "MATHEMATICAL EQUATIONS: Convert ALL mathematical expressions to LaTeX using $$ delimiters "
    "(\\frac{}{}, \\sqrt{}, \\int, \\sum, \\pi, \\theta). "
    "FINAL CHECK: If anything is unclear, mark it as [UNCLEAR] but still attempt to extract it."
)

EXTRACTION_USER_PROMPT = (
    "Extract ALL text and details from this {document_label} image exactly as they appear. Pay special "
    "attention to: MCQ circles and answer selections, handwritten content, typed text, question numbers, "
    "mathematical equations, diagrams, marks allocation, student responses, and any other visible marks or "
    "annotations. If anything is unclear, mark it as [UNCLEAR] but still attempt to extract it."
)

DOCUMENT_LABELS = {
    "question": "question paper",
    "answer": "answer key",
    "student-sheet": "student answer sheet",
    "chapter-material": "chapter material",
}


def extraction_system_prompt(document_type: str) -> str:
    return EXTRACTION_BASE_SYSTEM + EXTRACTION_TYPE_SYSTEM.get(document_type, "") + EXTRACTION_SHARED_SYSTEM


# ─────────────────────────────────────────────────────────
# ANSWER KEY GENERATION
# ─────────────────────────────────────────────────────────

ANSWER_KEY_SYSTEM = (
    "You are an expert teacher. Generate a clear, concise answer key for the given question paper, "
    "taking into account the marks for each question. For higher-mark questions, provide more detailed answers."
)

ANSWER_KEY_PROMPT = """Given the following question paper, generate a detailed answer key. For each question, provide
the main points or correct answers, and take into account the marks assigned to each question. For
higher-mark questions, provide more detailed answers. Format the answer key clearly, matching the question
numbers and marks.

Question Paper:
{question_paper}
"""


# ─────────────────────────────────────────────────────────
# BATCH GRADING
# ─────────────────────────────────────────────────────────

BATCH_GRADING_SYSTEM = (
    "You are an AI evaluator. Process the specified questions and return a valid JSON object "
    "of the form {\"answers\": [...]}."
)

BATCH_GRADING_PROMPT = """
Process ONLY the following question numbers: {question_numbers}

Question Paper (focus on questions {question_numbers}):
{question_paper}

Answer Key (focus on questions {question_numbers}):
{answer_key}

Student Answer Sheet (focus on questions {question_numbers}):
{student_sheet}

Student Information:
- Name: {name}
- Roll Number: {roll_number}
- Class: {class_name}
- Subject: {subject}
{rubric_section}
SCORING GUIDELINES:
- MCQs: Award full marks for the correct option, 0 for incorrect
- Objective questions: Award partial marks based on key points covered
- Subjective questions: Award marks based on depth and accuracy
- If a question is not attempted, create an entry with 0 marks and remark "Question not attempted"
- Skip question numbers that do not exist in the question paper

Return ONLY a JSON object {{"answers": [...]}} where each answer has this shape:
{{
  "question_no": 1,
  "section": "Section A",
  "question": "Question text",
  "expected_answer": "Expected answer",
  "answer": "Student's answer",
  "raw_extracted_text": "The exact text from the student's sheet",
  "score": [assigned_score, total_score],
  "remarks": "Why marks were awarded or deducted",
  "confidence": 0.95,
  "concepts": ["Concept 1", "Concept 2"],
  "missing_elements": ["Missing 1", "Missing 2"],
  "answer_matches": true,
  "personalized_feedback": "Actionable feedback for this question",
  "alignment_notes": "How well the answer aligns with the expected content"
}}

Process ONLY the questions {question_numbers}. Keep feedback concise but informative.
"""

RUBRIC_SECTION = """
GRADING STRICTNESS (1 = Lenient ... 5 = Very Strict):
{levels}
"""

RUBRIC_LEVELS = {
    1: ("Lenient", "Focus only on major points, minor errors are ignored. Friendly checking."),
    2: ("Light", "Accepts slightly incomplete answers, small mistakes are tolerated."),
    3: ("Moderate", "Balanced checking - some errors deducted, but fair."),
    4: ("Strict", "Detailed checking, deducts for structure, logic, grammar, formatting, etc."),
    5: ("Very Strict", "Highest level of scrutiny. Every detail is evaluated thoroughly."),
}

RUBRIC_CRITERIA = ("accuracy", "relevance", "clarity", "structure", "language")


# ─────────────────────────────────────────────────────────
# PAPER ANALYSIS (Bloom's taxonomy / difficulty / course outcomes)
# ─────────────────────────────────────────────────────────

BLOOMS_LEVELS = ("remember", "understand", "apply", "analyze", "evaluate", "create")
DIFFICULTY_LEVELS = ("easy", "medium", "hard")

PAPER_ANALYSIS_SYSTEM = (
    "You are an educational assessment expert. You classify exam questions by Bloom's Taxonomy "
    "and difficulty and map them to course outcomes. Respond with valid JSON only."
)

PAPER_ANALYSIS_PROMPT = """Below is the text of a question paper and the course outcomes for the subject.

QUESTION PAPER TEXT:
{paper_text}

COURSE OUTCOMES:
{course_outcomes}

Analyse the paper:
1. Identify every individual question and its number
2. Rate each question's difficulty (easy, medium, hard)
3. Map each question to the single most relevant course outcome label (CO1, CO2, ...), or null if none fit
4. Classify each question by Bloom's Taxonomy level (remember, understand, apply, analyze, evaluate, create)
5. Comment on the balance of the paper and suggest improvements

Return ONLY this JSON object:
{{
  "questionAnalysis": [
    {{
      "questionNumber": 1,
      "questionText": "first 80 characters of the question",
      "difficulty": "easy|medium|hard",
      "courseOutcome": "CO1",
      "bloomsLevel": "remember|understand|apply|analyze|evaluate|create"
    }}
  ],
  "analysisDetails": {{
    "bloomsAnalysis": "1-2 paragraphs on Bloom's coverage and balance",
    "courseOutcomeCoverage": "1-2 paragraphs on course outcome alignment",
    "difficultyDistribution": "1-2 paragraphs on the difficulty spread"
  }},
  "improvementSuggestions": [
    {{"title": "Short title", "description": "1-2 sentences"}}
  ]
}}
"""

NO_COURSE_OUTCOMES = "No course outcomes found for this subject."


# ─────────────────────────────────────────────────────────
# QUESTION GENERATION
# ─────────────────────────────────────────────────────────

QUESTION_GENERATION_SYSTEM = (
    "You are an AI specialised in writing high-quality educational assessment questions. "
    "Respond with a JSON object {\"questions\": [...]} and nothing else."
)

MCQ_INSTRUCTIONS = """Generate exactly {count} multiple choice questions with 4 options each. Each question has:
  - question: the question text
  - options: an array of exactly 4 option strings
  - correct_answer: the correct option, copied exactly from options
  - bloom_level: remember|understand|apply|analyze|evaluate|create
  - course_outcome: the CO label it targets (CO1, CO2, ...) or null"""

THEORY_INSTRUCTIONS = """Generate exactly {count} theory questions with this mark distribution:
  - 1 mark questions: {mark1}
  - 2 mark questions: {mark2}
  - 4 mark questions: {mark4}
  - 8 mark questions: {mark8}
Each question has:
  - question: the question text
  - marks: 1, 2, 4 or 8
  - answer: the expected answer, longer for higher marks
  - bloom_level: remember|understand|apply|analyze|evaluate|create
  - course_outcome: the CO label it targets (CO1, CO2, ...) or null"""

QUESTION_GENERATION_PROMPT = """Generate {count} {question_type} questions on the topic "{topic}" in {subject}.

Difficulty level: {difficulty}/100
Chunk: {chunk} of {total_chunks}

{instructions}
{bloom_section}{outcome_section}
RULES:
1. MCQ correct_answer must be one of its options
2. Theory marks must be one of 1, 2, 4, 8
3. Use double-quoted JSON only

{content_section}
"""

BLOOM_TARGET_SECTION = """
Target Bloom's Taxonomy mix (percent of questions):
{levels}
"""

COURSE_OUTCOME_SECTION = """
Course outcomes to consider:
{outcomes}
"""

CHAPTER_CONTENT_SECTION = """Chapter content to base the questions on:

{content}"""

COMMON_KNOWLEDGE_SECTION = "Base the questions on common knowledge about {topic} in {subject}."
