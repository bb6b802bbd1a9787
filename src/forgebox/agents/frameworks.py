"""Supported target stacks (a closed set) and their sandbox conventions."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Framework:
    id: str
    display_name: str
    template: str  # Sandbox image booted for this stack
    port: int  # Dev server port inside the sandbox
    lint_command: str
    build_command: str
    conventions: str  # Layout guidance given to the coder
    aliases: Tuple[str, ...] = field(default_factory=tuple)


FRAMEWORKS: Dict[str, Framework] = {
    "nextjs": Framework(
        id="nextjs",
        display_name="Next.js",
        template="forgebox-nextjs",
        port=3000,
        lint_command="npm run lint",
        build_command="npm run build",
        conventions=(
            "Next.js 15 App Router with TypeScript and Tailwind CSS. Pages live in app/ "
            "(app/page.tsx, app/layout.tsx); shared components in components/; "
            "client components start with 'use client'. Do not modify package.json scripts."
        ),
        aliases=("next.js", "next js"),
    ),
    "react": Framework(
        id="react",
        display_name="React",
        template="forgebox-react",
        port=5173,
        lint_command="npm run lint",
        build_command="npm run build",
        conventions=(
            "React 18 + Vite + TypeScript. Entry point src/main.tsx, root component "
            "src/App.tsx, components in src/components/. Style with Tailwind CSS."
        ),
        aliases=("react.js", "reactjs"),
    ),
    "vue": Framework(
        id="vue",
        display_name="Vue",
        template="forgebox-vue",
        port=5173,
        lint_command="npm run lint",
        build_command="npm run build",
        conventions=(
            "Vue 3 + Vite + TypeScript using <script setup> single-file components. "
            "Entry src/main.ts, root src/App.vue, components in src/components/."
        ),
        aliases=("vue.js", "vuejs", "nuxt"),
    ),
    "angular": Framework(
        id="angular",
        display_name="Angular",
        template="forgebox-angular",
        port=4200,
        lint_command="npm run lint",
        build_command="npm run build",
        conventions=(
            "Angular 19 with standalone components and TypeScript. Application code in "
            "src/app/ (app.component.ts, app.routes.ts); one folder per feature component."
        ),
        aliases=("angularjs",),
    ),
    "svelte": Framework(
        id="svelte",
        display_name="Svelte",
        template="forgebox-svelte",
        port=5173,
        lint_command="npm run lint",
        build_command="npm run build",
        conventions=(
            "SvelteKit with TypeScript. Routes in src/routes/ (+page.svelte, +layout.svelte), "
            "reusable components in src/lib/components/."
        ),
        aliases=("sveltekit", "svelte kit"),
    ),
}

# The most general-purpose stack; chosen when a request is ambiguous
DEFAULT_FRAMEWORK = "nextjs"

SUPPORTED_FRAMEWORKS: List[str] = list(FRAMEWORKS)


def get_framework(framework_id: Optional[str]) -> Framework:
    """Look up a stack, falling back to the default for unknown ids."""
    return FRAMEWORKS.get((framework_id or "").lower(), FRAMEWORKS[DEFAULT_FRAMEWORK])


def validation_commands(framework_id: Optional[str]) -> List[str]:
    """Static check, then build."""
    framework = get_framework(framework_id)
    return [framework.lint_command, framework.build_command]
