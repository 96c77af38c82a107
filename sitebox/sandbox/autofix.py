"""
Error classification and repair strategies for failing sandbox builds.

classify() turns an ErrorRecord into a Classification by walking a
prioritized table of (pattern, extractor) rules; the first rule whose
extractor returns a result wins. It has no side effects.

AutoFixer holds one repair strategy per kind. A strategy either returns a
FixOutcome or raises ClassificationUnknownError, which sends the failure
on to the generative repairer. All writes go through the pipeline's
write_files.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Pattern, Protocol, Tuple

from sitebox.errors import ClassificationUnknownError, SandboxIOError
from sitebox.schemas import ErrorRecord, FileSpec, FixDirective
from sitebox.sandbox.pipeline import CodeApplicationPipeline, package_name, validate_relative_path
from sitebox.sandbox.scaffold import STYLESHEET_STUB, placeholder_component
from sitebox.utils import infer_component_name


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    MISSING_LOCAL_IMPORT = "MISSING_LOCAL_IMPORT"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    MISSING_ASSET = "MISSING_ASSET"
    UNKNOWN = "UNKNOWN"


# Kind names as reported by the browser-side error detector
KIND_ALIASES = {
    "missing-import": ErrorKind.MISSING_LOCAL_IMPORT,
    "missing-local-import": ErrorKind.MISSING_LOCAL_IMPORT,
    "missing-dependency": ErrorKind.MISSING_DEPENDENCY,
    "missing-package": ErrorKind.MISSING_DEPENDENCY,
    "syntax-error": ErrorKind.SYNTAX_ERROR,
    "missing-asset": ErrorKind.MISSING_ASSET,
}

STYLESHEET_EXTENSIONS = (".css", ".scss", ".sass", ".less")
COMPONENT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")

# Default directory for paths reported without an importing file
SOURCE_ROOT = "src"


@dataclass(frozen=True)
class Classification:
    """Typed view of an error plus the fields its repair needs."""
    kind: ErrorKind
    import_path: Optional[str] = None
    from_file: Optional[str] = None
    dependency: Optional[str] = None
    asset_path: Optional[str] = None
    file: Optional[str] = None
    rule: str = "fallback"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class FixOutcome:
    """Result of one repair strategy."""
    fixed: bool
    action: str
    paths: List[str] = field(default_factory=list)
    message: str = ""


class GenerativeRepairer(Protocol):
    """External text-completion collaborator for errors no rule can fix."""

    def propose_fixes(self, error_text: str, file_path: Optional[str], content: str) -> List[FixDirective]:
        ...


# =============================================================================
# CLASSIFICATION
# =============================================================================

def is_relative(specifier: str) -> bool:
    return specifier.startswith(("./", "../"))


def is_stylesheet(path: str) -> bool:
    return path.lower().endswith(STYLESHEET_EXTENSIONS)


def _kind_from_name(name: Optional[str]) -> Optional[ErrorKind]:
    if not name:
        return None
    key = name.strip()
    if key.upper() in ErrorKind.__members__:
        return ErrorKind[key.upper()]
    return KIND_ALIASES.get(key.lower())


def _explicit(error: ErrorRecord) -> Optional[Classification]:
    kind = _kind_from_name(error.kind)
    if kind is None:
        return None
    dependency = None
    if kind is ErrorKind.MISSING_DEPENDENCY and error.import_path:
        dependency = package_name(error.import_path)
    asset = error.import_path if kind is ErrorKind.MISSING_ASSET else None
    return Classification(
        kind=kind,
        import_path=error.import_path,
        from_file=error.from_file,
        dependency=dependency,
        asset_path=asset,
        file=error.file,
        rule="explicit",
    )


def _resolve_import(match: "re.Match", error: ErrorRecord) -> Optional[Classification]:
    specifier, from_file = match.group(1), match.group(2)
    if is_relative(specifier):
        return Classification(
            kind=ErrorKind.MISSING_LOCAL_IMPORT,
            import_path=specifier,
            from_file=from_file,
            file=error.file,
            rule="resolve_import",
        )
    if specifier.startswith(("/", "@/")):
        return None
    return Classification(
        kind=ErrorKind.MISSING_DEPENDENCY,
        import_path=specifier,
        from_file=from_file,
        dependency=package_name(specifier),
        file=error.file,
        rule="resolve_import",
    )


def _cannot_find_module(match: "re.Match", error: ErrorRecord) -> Optional[Classification]:
    specifier = match.group(1)
    if specifier.startswith((".", "/", "@/")) or is_stylesheet(specifier):
        return None
    return Classification(
        kind=ErrorKind.MISSING_DEPENDENCY,
        import_path=specifier,
        dependency=package_name(specifier),
        file=error.file,
        rule="cannot_find_module",
    )


_FILE_REFERENCE = re.compile(r"file:\s*([^\s'\"`]+)", re.IGNORECASE)
_LOCATION_REFERENCE = re.compile(r"([\w@./\\-]+\.(?:jsx?|tsx?|mjs)):\d+(?::\d+)?")


def _syntax_error(match: "re.Match", error: ErrorRecord) -> Optional[Classification]:
    file = error.file
    if not file:
        reference = _FILE_REFERENCE.search(error.message) or _LOCATION_REFERENCE.search(error.message)
        file = reference.group(1) if reference else None
    return Classification(kind=ErrorKind.SYNTAX_ERROR, file=file, rule="syntax_error")


def _missing_stylesheet(match: "re.Match", error: ErrorRecord) -> Optional[Classification]:
    return Classification(
        kind=ErrorKind.MISSING_ASSET,
        asset_path=match.group(1),
        from_file=error.from_file,
        file=error.file,
        rule="missing_stylesheet",
    )


Extractor = Callable[["re.Match", ErrorRecord], Optional[Classification]]


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    pattern: Pattern
    extract: Extractor


_Q = r"""["'`]"""

CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "resolve_import",
        re.compile(rf"(?:failed to|could not) resolve (?:import )?{_Q}([^\"'`]+){_Q} from {_Q}([^\"'`]+){_Q}", re.IGNORECASE),
        _resolve_import,
    ),
    ClassificationRule(
        "cannot_find_module",
        re.compile(rf"(?:cannot|can't|could not) (?:resolve|find) (?:module )?{_Q}([^\"'`]+){_Q}", re.IGNORECASE),
        _cannot_find_module,
    ),
    ClassificationRule(
        "syntax_error",
        re.compile(r"SyntaxError|Unexpected token"),
        _syntax_error,
    ),
    ClassificationRule(
        "missing_stylesheet",
        re.compile(
            rf"(?:resolve|find|not found|no such file)[^\n]*?{_Q}([^\"'`\n]+\.(?:css|scss|sass|less)){_Q}",
            re.IGNORECASE,
        ),
        _missing_stylesheet,
    ),
)


def classify(error: ErrorRecord, rules: Tuple[ClassificationRule, ...] = CLASSIFICATION_RULES) -> Classification:
    """
    Classify a build or runtime error.

    An explicit, recognized kind on the record wins. Otherwise the rules are
    tried in order and the first extractor returning a classification wins.

    Args:
        error: The error to classify
        rules: Ordered rule table

    Returns:
        Classification, with kind UNKNOWN when nothing matched
    """
    explicit = _explicit(error)
    if explicit is not None:
        return explicit

    message = error.message or ""
    for rule in rules:
        match = rule.pattern.search(message)
        if not match:
            continue
        result = rule.extract(match, error)
        if result is not None:
            return result

    return Classification(kind=ErrorKind.UNKNOWN, file=error.file, from_file=error.from_file)


# =============================================================================
# SYNTAX REWRITES
# =============================================================================

SYNTAX_REWRITES: Tuple[Tuple[Pattern, str], ...] = (
    (re.compile(r"(?<=\s)class="), "className="),
    (re.compile(r"(?<=\s)for="), "htmlFor="),
    (re.compile(r"""^([ \t]*(?:import|export)\b[^;\n]*\bfrom\s+['"][^'"\n]+['"])[ \t]*$""", re.MULTILINE), r"\1;"),
)


def apply_syntax_rewrites(content: str) -> str:
    for pattern, replacement in SYNTAX_REWRITES:
        content = pattern.sub(replacement, content)
    return content


# =============================================================================
# PATH HELPERS
# =============================================================================

def relative_to_root(root: Path, path: str) -> str:
    """Express a reported path relative to the sandbox root."""
    raw = path.replace("\\", "/")
    root_posix = Path(root).resolve().as_posix()
    if raw.startswith(root_posix + "/"):
        raw = raw[len(root_posix) + 1:]
    return raw.lstrip("/")


def local_import_target(specifier: str, from_file: Optional[str]) -> str:
    """Path of the module a relative import refers to, with .jsx appended when it has no source extension."""
    base_dir = posixpath.dirname(from_file) if from_file else SOURCE_ROOT
    target = posixpath.normpath(posixpath.join(base_dir, specifier))
    if not target.lower().endswith(COMPONENT_EXTENSIONS + STYLESHEET_EXTENSIONS):
        target += ".jsx"
    return target


def asset_target(asset_path: str, from_file: Optional[str]) -> str:
    """Where a missing asset belongs: beside its importer, or under src/ when the importer is unknown."""
    if is_relative(asset_path):
        base_dir = posixpath.dirname(from_file) if from_file else SOURCE_ROOT
        return posixpath.normpath(posixpath.join(base_dir, asset_path))
    cleaned = asset_path.lstrip("/")
    if cleaned.startswith(SOURCE_ROOT + "/"):
        return posixpath.normpath(cleaned)
    return posixpath.normpath(posixpath.join(SOURCE_ROOT, cleaned))


# =============================================================================
# AUTO-FIXER
# =============================================================================

class AutoFixer:
    """
    Repair strategies, one per error kind.

    Args:
        pipeline: Provides the write path, package installs and file reads
        repairer: Optional generative fallback
    """

    def __init__(self, pipeline: CodeApplicationPipeline, repairer: Optional[GenerativeRepairer] = None):
        self.pipeline = pipeline
        self.repairer = repairer

    def _root(self, sandbox_id: str) -> Path:
        return self.pipeline.registry.get(sandbox_id).root

    def _relative(self, sandbox_id: str, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return relative_to_root(self._root(sandbox_id), path)

    def fix_missing_local_import(self, sandbox_id: str, classification: Classification) -> FixOutcome:
        """Write a placeholder module where the relative import points."""
        if not classification.import_path:
            raise ClassificationUnknownError("Missing import without an import path")

        from_file = self._relative(sandbox_id, classification.from_file)
        target = local_import_target(classification.import_path, from_file)

        if is_stylesheet(target):
            content = STYLESHEET_STUB
            action = "created_stylesheet"
        else:
            name = infer_component_name(target)
            content = placeholder_component(name)
            action = "created_component"

        paths = self.pipeline.write_files(sandbox_id, [FileSpec(path=target, content=content)])
        logger.info("Auto-fix %s: created %s for %s", sandbox_id, target, classification.import_path)
        return FixOutcome(fixed=True, action=action, paths=paths, message=f"Created missing module {target}")

    def fix_missing_dependency(self, sandbox_id: str, classification: Classification) -> FixOutcome:
        """Install exactly the missing package."""
        dependency = classification.dependency
        if not dependency:
            raise ClassificationUnknownError("Missing dependency without a package name")

        report = self.pipeline.install_packages(sandbox_id, [dependency])
        if dependency in report.installed:
            return FixOutcome(fixed=True, action="installed_package", message=f"Installed {dependency}")

        if dependency in report.already_present:
            # Declared but not on disk; reinstall from the manifest
            with self.pipeline.registry.lock(sandbox_id) as sandbox:
                result = self.pipeline.toolchain.install(sandbox.root)
            if result.success:
                return FixOutcome(
                    fixed=True, action="reinstalled_packages",
                    message=f"{dependency} already declared; reinstalled dependencies",
                )
            raise ClassificationUnknownError(f"Reinstall for {dependency} failed: {result.stderr.strip()[:300]}")

        raise ClassificationUnknownError(f"Could not install {dependency}: {report.failed.get(dependency, 'unknown')}")

    def fix_syntax_error(self, sandbox_id: str, classification: Classification) -> FixOutcome:
        """Apply the bounded rewrites to the offending file; write only when something changed."""
        file = self._relative(sandbox_id, classification.file)
        if not file:
            raise ClassificationUnknownError("Cannot fix syntax error without file information")

        try:
            content = self.pipeline.read_file(sandbox_id, file)
        except SandboxIOError as e:
            raise ClassificationUnknownError(f"Cannot read {file}: {e}") from e
        if content is None:
            raise ClassificationUnknownError(f"File not found: {file}")

        fixed = apply_syntax_rewrites(content)
        if fixed == content:
            raise ClassificationUnknownError(f"No known rewrite applies to {file}")

        paths = self.pipeline.write_files(sandbox_id, [FileSpec(path=file, content=fixed)])
        return FixOutcome(fixed=True, action="fixed_syntax", paths=paths, message=f"Fixed common syntax errors in {file}")

    def fix_missing_asset(self, sandbox_id: str, classification: Classification) -> FixOutcome:
        """Create a stylesheet stub for a missing stylesheet."""
        asset = classification.asset_path
        if not asset or not is_stylesheet(asset):
            raise ClassificationUnknownError(f"Unknown asset type - cannot auto-create: {asset}")

        target = asset_target(
            self._relative(sandbox_id, asset) if asset.startswith("/") else asset,
            self._relative(sandbox_id, classification.from_file),
        )
        paths = self.pipeline.write_files(sandbox_id, [FileSpec(path=target, content=STYLESHEET_STUB)])
        return FixOutcome(fixed=True, action="created_asset", paths=paths, message=f"Created missing stylesheet {target}")

    def generative_fix(self, sandbox_id: str, classification: Classification, error: ErrorRecord) -> FixOutcome:
        """
        Ask the generative repairer for whole-file writes and apply them.

        Directives are applied as-is after a path containment check; their
        content is not validated before the retried build.
        """
        if self.repairer is None:
            return FixOutcome(fixed=False, action="generative", message="No generative repairer configured")

        file = self._relative(sandbox_id, classification.file or classification.from_file)
        content = ""
        if file:
            try:
                content = self.pipeline.read_file(sandbox_id, file) or ""
            except SandboxIOError as e:
                logger.warning("Could not read %s for generative repair: %s", file, e)

        try:
            directives = self.repairer.propose_fixes(error.message, file, content)
        except Exception as e:
            logger.exception("Generative repair failed for %s", sandbox_id)
            return FixOutcome(fixed=False, action="generative", message=f"Generative repair failed: {e}")

        files = []
        for directive in directives:
            try:
                path = validate_relative_path(self._relative(sandbox_id, directive.file) or "")
            except SandboxIOError as e:
                logger.warning("Skipping generative directive for %r: %s", directive.file, e)
                continue
            files.append(FileSpec(path=path, content=directive.content))

        if not files:
            return FixOutcome(fixed=False, action="generative", message="Generative repair proposed no usable fixes")

        paths = self.pipeline.write_files(sandbox_id, files)
        return FixOutcome(
            fixed=True, action="generative", paths=paths,
            message=f"Applied {len(paths)} generated fix(es)",
        )

    def strategy_for(self, kind: ErrorKind) -> Callable[[str, Classification], FixOutcome]:
        """
        Deterministic strategy for a kind.

        Raises:
            ClassificationUnknownError: UNKNOWN has no deterministic strategy
        """
        strategies = {
            ErrorKind.MISSING_LOCAL_IMPORT: self.fix_missing_local_import,
            ErrorKind.MISSING_DEPENDENCY: self.fix_missing_dependency,
            ErrorKind.SYNTAX_ERROR: self.fix_syntax_error,
            ErrorKind.MISSING_ASSET: self.fix_missing_asset,
        }
        if kind not in strategies:
            raise ClassificationUnknownError(f"No deterministic repair for {kind.value}")
        return strategies[kind]
