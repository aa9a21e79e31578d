from __future__ import annotations

import json
from typing import List, Mapping, Optional, Sequence

from ..domain.models import ConversationTurn, UploadedFile


_UPLOAD_SNIPPET_LIMIT = 12000
_HISTORY_TURNS = 3

_BASE_INSTRUCTIONS = """You are an expert React developer. Generate PRODUCTION-READY React code that works perfectly in code preview environments.

**CRITICAL: Return ONLY valid JSON - no explanations, no markdown, just the JSON object.**

**JSON FORMAT EXAMPLE:**
{
  "/src/App.js": "import React from 'react';\\n\\nfunction App() {\\n  return (\\n    <div className=\\"app\\">\\n      <h1>Hello World</h1>\\n    </div>\\n  );\\n}\\n\\nexport default App;",
  "/src/index.js": "import React from 'react';\\nimport { createRoot } from 'react-dom/client';\\nimport App from './App';\\n\\nconst root = createRoot(document.getElementById('root'));\\nroot.render(<App />);"
}

**MANDATORY RULES:**

1. **React Component Structure:**
   - EVERY component file MUST start with: `import React from 'react';`
   - EVERY component MUST end with: `export default ComponentName;`
   - Use ONLY function components: `function ComponentName() { return (...); }`
   - NO class components, NO arrow functions for main components

2. **Required Files (MUST include all):**
   - "/src/App.js" - Main component with React import and default export
   - "/src/index.js" - Entry point using createRoot from react-dom/client
   - "/src/App.css" - Basic CSS styles (can be empty but include the file)
   - "/public/index.html" - HTML with proper setup
   - "/package.json" - Package configuration

3. **Import Rules:**
   - React components: `import ComponentName from './ComponentName';`
   - CSS: `import './App.css';`
   - createRoot: `import { createRoot } from 'react-dom/client';`

4. **Styling - USE NORMAL CSS:**
   - Use CSS classes defined in App.css (container, card, btn, btn-primary, grid, flex-center, spacing utilities)
   - Create modern, responsive designs with custom CSS and a mobile breakpoint at 768px
   - NO external CSS frameworks or CDNs

5. **File Templates:**

/src/index.js:
```
import React from 'react';
import { createRoot } from 'react-dom/client';
import App from './App';
import './App.css';

const root = createRoot(document.getElementById('root'));
root.render(<App />);
```

/public/index.html:
```
<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>React App</title>
  </head>
  <body>
    <noscript>You need to enable JavaScript to run this app.</noscript>
    <div id="root"></div>
  </body>
</html>
```

/package.json:
```
{
  "name": "react-app",
  "version": "1.0.0",
  "private": true,
  "dependencies": {
    "react": "^18.2.0",
    "react-dom": "^18.2.0"
  },
  "scripts": {
    "start": "react-scripts start",
    "build": "react-scripts build"
  }
}
```

**VALIDATION BEFORE RESPONDING:**
- Check that every .js file has `import React from 'react';`
- Check that every component has `export default ComponentName;`
- Check that App.js is imported correctly in index.js
- Ensure components use the CSS classes defined in App.css
- Ensure valid JSON with proper escaping (\\n for newlines, \\" for quotes)"""

_ITERATIVE_RULES = """**MANDATORY RULES FOR ITERATIVE UPDATES:**

1. **Incremental Changes Only:**
   - Only modify files that need changes based on the user's request
   - Preserve all existing functionality unless explicitly asked to change it
   - Keep all existing imports and dependencies intact unless they conflict with changes

2. **File Modification Strategy:**
   - For small changes: Return ONLY the modified files
   - For structural changes: Return all affected files
   - Always ensure imports reference existing files only

3. **Import Validation:**
   - If you create new components, ensure they're properly exported
   - If you reference new files, include them in the response
   - Remove imports for deleted components/files

4. **Consistency Rules:**
   - Maintain existing naming conventions, styling approach and state management patterns

5. **Response Format:**
   Return a JSON object with only the files that need to be changed:
   ```json
   {
     "/src/ComponentToModify.js": "modified content here...",
     "/src/NewComponent.js": "new component content if needed..."
   }
   ```

**IMPORTANT:** If the request is unclear or would break existing functionality, make minimal, safe changes that align with the user's intent while preserving the working state of the application."""


def _files_json(files: Mapping[str, str]) -> str:
    return json.dumps(dict(files), indent=2, ensure_ascii=False)


def upload_context_block(uploads: Optional[Sequence[UploadedFile]]) -> str:
    parts: List[str] = []
    for upload in uploads or []:
        if upload.is_data_url:
            parts.append(f"--- ATTACHED {upload.name} ({upload.type or 'binary'}, {upload.size} bytes) ---")
            continue
        if not upload.content.strip():
            continue
        snippet = upload.content
        if len(snippet) > _UPLOAD_SNIPPET_LIMIT:
            snippet = snippet[:_UPLOAD_SNIPPET_LIMIT] + "\n\n[truncated]"
        parts.append(f"--- BEGIN {upload.name} ---\n{snippet}\n--- END {upload.name} ---")
    return "\n\n".join(parts)


def _with_uploads(prompt: str, uploads: Optional[Sequence[UploadedFile]]) -> str:
    block = upload_context_block(uploads)
    if not block:
        return prompt
    return f"{prompt}\n\n**UPLOADED FILES (reference material from the user):**\n{block}"


def summarize_turns(turns: Optional[Sequence[ConversationTurn]]) -> str:
    if not turns:
        return "This is the first modification request."
    recent = list(turns)[-_HISTORY_TURNS:]
    return "\n".join(
        f'{idx}. User: "{turn.prompt}" ({len(turn.file_changes)} files affected)'
        for idx, turn in enumerate(recent, start=1)
    )


def build_generation_prompt(
    prompt: Optional[str],
    existing_files: Optional[Mapping[str, str]] = None,
    uploads: Optional[Sequence[UploadedFile]] = None,
) -> str:
    if existing_files:
        text = f"""{_BASE_INSTRUCTIONS}

**TASK**: Enhance the existing React application.

**EXISTING FILES:**
{_files_json(existing_files)}

**USER REQUEST**: {prompt or "Enhance the application"}

**INSTRUCTIONS:**
1. Keep all existing functionality
2. Fix any import/export issues in existing code
3. Add the requested enhancements
4. Ensure all files follow the rules above, especially CSS styling
5. Return complete enhanced project as JSON"""
    else:
        text = f"""{_BASE_INSTRUCTIONS}

**TASK**: Create a new React application from scratch.

**USER REQUEST**: {prompt or "Create a React application"}

**INSTRUCTIONS:**
1. Build a complete functional React app for the user's request
2. Follow all the mandatory rules above, especially CSS styling
3. Include all required files with proper structure
4. Use semantic HTML and proper CSS architecture
5. Return complete project as JSON"""
    return _with_uploads(text, uploads)


def build_iterative_prompt(
    prompt: str,
    existing_files: Mapping[str, str],
    turns: Optional[Sequence[ConversationTurn]] = None,
    uploads: Optional[Sequence[UploadedFile]] = None,
) -> str:
    text = f"""You are an expert React developer working on an iterative code modification task.

**CRITICAL: Return ONLY valid JSON - no explanations, no markdown, just the JSON object.**

**CURRENT REQUEST**: {prompt}

**EXISTING FILES:**
{_files_json(existing_files)}

**CONVERSATION CONTEXT:**
{summarize_turns(turns)}

{_ITERATIVE_RULES}"""
    return _with_uploads(text, uploads)
