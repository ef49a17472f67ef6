"""Agent roles and the keyword rules that pick them for a requirement."""

import re
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    FULLSTACK = "fullstack"
    TESTING = "testing"
    DEVOPS = "devops"
    ARCHITECT = "architect"
    STYLING = "styling"
    DOCS = "docs"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RoleProfile:
    title: str
    description: str
    persona: str
    capabilities: tuple[str, ...]
    focus: tuple[str, ...]


ROLE_PROFILES: dict[Role, RoleProfile] = {
    Role.FRONTEND: RoleProfile(
        title="Frontend Developer",
        description="Specializes in user interfaces, React components, and client-side logic",
        persona=(
            "You are an expert Frontend Developer specializing in React, TypeScript, "
            "and modern UI/UX design."
        ),
        capabilities=("react", "typescript", "css", "html", "ui-design", "responsive-design"),
        focus=(
            "React components with TypeScript",
            "Responsive design and user experience",
            "Modern CSS or styled-components",
            "Proper component architecture",
            "User interface implementation",
        ),
    ),
    Role.BACKEND: RoleProfile(
        title="Backend Developer",
        description="Specializes in APIs, databases, and server-side logic",
        persona=(
            "You are an expert Backend Developer specializing in APIs, databases, "
            "and robust, secure server-side design."
        ),
        capabilities=("nodejs", "express", "databases", "api-design", "authentication", "security"),
        focus=(
            "API endpoints",
            "Database integration and models",
            "Authentication and authorization",
            "Error handling and validation",
            "Server-side logic and business rules",
        ),
    ),
    Role.FULLSTACK: RoleProfile(
        title="Full-Stack Developer",
        description="Connects frontend and backend into one working system",
        persona=(
            "You are an expert Full-Stack Developer who integrates user interfaces "
            "with backend services end to end."
        ),
        capabilities=("integration", "react", "nodejs", "databases", "deployment"),
        focus=(
            "Wiring frontend calls to backend endpoints",
            "Shared types and contracts",
            "End-to-end data flow",
            "Performance across the stack",
        ),
    ),
    Role.TESTING: RoleProfile(
        title="QA Engineer",
        description="Specializes in automated testing and quality assurance",
        persona=(
            "You are an expert QA Engineer specializing in automated testing, "
            "test strategies, and quality assurance."
        ),
        capabilities=("unit-testing", "integration-testing", "e2e-testing", "test-automation"),
        focus=(
            "Unit tests for components and functions",
            "Integration tests for API endpoints",
            "Test setup and configuration",
            "Mocking and test utilities",
            "Test documentation and coverage",
        ),
    ),
    Role.DEVOPS: RoleProfile(
        title="DevOps Engineer",
        description="Specializes in deployment, CI/CD, and infrastructure",
        persona=(
            "You are an expert DevOps Engineer specializing in deployment, CI/CD, "
            "and infrastructure."
        ),
        capabilities=("docker", "ci-cd", "cloud", "monitoring", "infrastructure-as-code"),
        focus=(
            "Build and deployment pipelines",
            "Container and hosting configuration",
            "Monitoring and alerting",
            "Environment configuration",
        ),
    ),
    Role.ARCHITECT: RoleProfile(
        title="Software Architect",
        description="Plans system structure and technical direction",
        persona=(
            "You are an expert Software Architect who designs maintainable systems "
            "and writes precise technical specifications."
        ),
        capabilities=("system-design", "architecture", "planning", "documentation"),
        focus=(
            "System boundaries and components",
            "Data model and interfaces",
            "Technology choices",
            "Technical specification",
        ),
    ),
    Role.STYLING: RoleProfile(
        title="UI/UX Designer",
        description="Specializes in visual design, theming, and styling",
        persona=(
            "You are an expert UI/UX Designer specializing in modern CSS architecture "
            "and design systems."
        ),
        capabilities=("css", "design-systems", "theming", "accessibility"),
        focus=(
            "Modern CSS architecture",
            "Responsive design patterns",
            "Component styling and themes",
            "CSS-in-JS or styled-components",
            "Design system implementation",
        ),
    ),
    Role.DOCS: RoleProfile(
        title="Documentation Writer",
        description="Specializes in READMEs, API references, and guides",
        persona=(
            "You are an expert Documentation Writer who produces clear setup guides "
            "and API references."
        ),
        capabilities=("technical-writing", "api-docs", "tutorials"),
        focus=(
            "README files with setup instructions",
            "API documentation",
            "Code comments and inline documentation",
            "Usage examples and tutorials",
            "Contributing guidelines",
        ),
    ),
}

BASE_ROLES = (Role.FRONTEND, Role.BACKEND)

# Word-prefix matches so that e.g. "build" does not count as "ui".
_OPTIONAL_ROLE_RULES: tuple[tuple[Role, re.Pattern], ...] = (
    (Role.TESTING, re.compile(r"\btest", re.IGNORECASE)),
    (Role.STYLING, re.compile(r"\b(?:styl|design|ui\b)", re.IGNORECASE)),
    (Role.DOCS, re.compile(r"\b(?:doc|readme)", re.IGNORECASE)),
)


def profile(role: Role | str) -> RoleProfile:
    return ROLE_PROFILES[Role(role)]


def parse_role(value: str) -> Role:
    """Parse a role name, raising ValueError with the valid names on a typo."""
    try:
        return Role(value.strip().lower())
    except ValueError:
        valid = ", ".join(r.value for r in Role)
        raise ValueError(f"Unknown role '{value}'. Valid roles: {valid}") from None


def determine_agent_roles(requirement: str, max_agents: int = 5) -> list[Role]:
    """Pick the roles for a team: frontend and backend always, others by keyword."""
    roles = list(BASE_ROLES)
    for role, pattern in _OPTIONAL_ROLE_RULES:
        if pattern.search(requirement):
            roles.append(role)
    return roles[:max_agents]
