# backend/codeweave/core/prompts.py

# System prompt for the planning call. The collaborator only decides where the
# task boundaries are; everything it returns is validated by the TaskPlanner.
PLANNER_SYSTEM_PROMPT = """
You are a senior software planner. You break a developer's request into a small set of concrete, dependent subtasks for an automated coding assistant. You respond with JSON only.
"""

# Asks the collaborator for a decomposition of the user's request.
PLANNER_REQUEST_PROMPT = """
**User Request:**
"{user_request}"

**Workspace Files (partial listing):**
{workspace_listing}

{seed_context}

**Instructions:**
1.  Decompose the request into the smallest set of subtasks that fully implements it.
2.  Each subtask produces or changes files, or analyzes existing code.
3.  If a subtask needs the output of another one (e.g. a stylesheet for a component created earlier), list that subtask's id in `dependencies`.
4.  Dependencies may only reference ids from this same response and must never form a cycle.
5.  Use only these task types: FILE_CREATION, FILE_MODIFICATION, ANALYSIS, REFACTOR, OTHER.
6.  Use only these priorities: HIGH, MEDIUM, LOW.

**Output Format:**
Respond with a single JSON object inside a ```json code block and nothing else:
```json
{{
  "mainGoal": "One sentence describing the overall goal",
  "taskBreakdown": [
    {{
      "id": "task1",
      "type": "FILE_CREATION",
      "description": "Create src/components/ProfileComponent.tsx rendering the user's name and avatar",
      "priority": "HIGH",
      "dependencies": []
    }}
  ],
  "contextRequired": ["relative/paths/of/files/you/need/to/see"],
  "risksAndConsiderations": ["anything the implementer should watch out for"]
}}
```
"""

# System prompt for every task execution call.
TASK_SYSTEM_PROMPT = """
You are an expert software engineer working inside an existing project. You complete exactly one subtask at a time and return complete file contents, never partial snippets or diffs.
"""

# Accepted response formats, shown in every task prompt.
FILE_FORMAT_INSTRUCTIONS = """
**How to return files:**
- Put every file in its own fenced code block and put the workspace-relative path in the info string, for example:
```typescript src/components/ProfileComponent.tsx
// full file content here
```
- Alternatively wrap a file in a tag: <file path="src/styles/profile.css">...full content...</file>
- To delete a file, write a single line: DELETE: path/to/file.ext
- Always return the COMPLETE content of every file you create or change.
- Never use absolute paths and never write outside the project.
"""

# Extra reminder added after a response yielded no usable file operations.
FORMAT_REMINDER = """
**IMPORTANT:** Your previous response could not be turned into file changes. Follow the file format above exactly: one fenced code block per file, with the path in the info string.
"""

# Added after a timeout so the next attempt produces a shorter response.
NARROW_PROMPT_NOTE = """
**IMPORTANT:** Your previous attempt took too long. Only produce the files strictly required by this subtask, without explanations.
"""

TASK_PROMPT = """
**Overall Goal:** {goal}

**Current Subtask ({task_id}, {task_type}):**
{task_description}

**Results of Completed Prerequisite Subtasks:**
{dependency_results}

**Workspace Files:**
{workspace_listing}

**Relevant File Contents:**
{file_contents}
{retry_note}
{format_instructions}
"""

# Used for ANALYSIS and OTHER tasks, which may answer in prose.
ANALYSIS_FORMAT_INSTRUCTIONS = """
**How to answer:**
Answer in Markdown. If the subtask also requires file changes, return them using the file formats described below.
""" + FILE_FORMAT_INSTRUCTIONS
