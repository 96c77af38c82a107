"""
Project scaffold written into every new sandbox: a Vite + React + Tailwind
app that builds to dist/.
"""

import json
from pathlib import Path
from typing import Dict


PACKAGE_JSON = {
    "name": "sandbox-app",
    "version": "1.0.0",
    "private": True,
    "type": "module",
    "scripts": {
        "dev": "vite --host 0.0.0.0",
        "build": "vite build",
        "preview": "vite preview --host 0.0.0.0",
    },
    "dependencies": {
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@vitejs/plugin-react": "^4.0.0",
        "vite": "^4.3.9",
        "tailwindcss": "^3.3.0",
        "postcss": "^8.4.31",
        "autoprefixer": "^10.4.16",
    },
}

VITE_CONFIG = """import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  base: './',
  plugins: [react()],
  server: {
    host: '0.0.0.0',
    strictPort: false,
    hmr: false
  },
  build: {
    outDir: 'dist',
    sourcemap: false,
    minify: 'esbuild'
  }
})
"""

TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
export default {
  content: [
    "./index.html",
    "./src/**/*.{js,ts,jsx,tsx}",
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}
"""

POSTCSS_CONFIG = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Sandbox App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>
"""

MAIN_JSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
"""

APP_JSX = """function App() {
  return (
    <div className="min-h-screen bg-gray-900 text-white flex items-center justify-center p-4">
      <div className="text-center max-w-2xl">
        <h1 className="text-4xl font-bold mb-4 text-blue-400">Sandbox Ready</h1>
        <p className="text-lg text-gray-400">
          Start building your React app with Vite and Tailwind CSS.
        </p>
      </div>
    </div>
  )
}

export default App
"""

INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

body {
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, sans-serif;
  background-color: rgb(17 24 39);
}
"""

COMPONENT_TEMPLATE = """import React from 'react';

const {name} = () => {{
  return (
    <div className="p-6 bg-gray-800 text-gray-100">
      <h2 className="text-2xl font-bold mb-4">{name}</h2>
      <p className="text-gray-300">
        This component was automatically generated to fix a missing import error.
        Please customize it according to your needs.
      </p>
    </div>
  );
}};

export default {name};
"""

STYLESHEET_STUB = """/* Auto-generated stylesheet */
@tailwind base;
@tailwind components;
@tailwind utilities;

/* Add your custom styles here */
"""


def scaffold_files() -> Dict[str, str]:
    """Relative path to content for a fresh sandbox."""
    return {
        "package.json": json.dumps(PACKAGE_JSON, indent=2) + "\n",
        "vite.config.js": VITE_CONFIG,
        "tailwind.config.js": TAILWIND_CONFIG,
        "postcss.config.js": POSTCSS_CONFIG,
        "index.html": INDEX_HTML,
        "src/main.jsx": MAIN_JSX,
        "src/App.jsx": APP_JSX,
        "src/index.css": INDEX_CSS,
    }


def write_scaffold(root: Path) -> None:
    """Create the directory scaffold under root."""
    root = Path(root)
    (root / "src" / "components").mkdir(parents=True, exist_ok=True)
    for rel_path, content in scaffold_files().items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def placeholder_component(name: str) -> str:
    """Minimal React component used to satisfy a missing local import."""
    return COMPONENT_TEMPLATE.format(name=name)
