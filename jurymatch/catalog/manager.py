# manager.py
# =============================================================================
# 画像目录的发现、加载与查询。
#
# 目录（catalog）提供信号定义与画像权重，全部离线编写，引擎只读。
# 生命周期：discover -> load -> freeze
#
# 目录结构：
#   <catalog_dir>/
#     signals.yaml          # name / version / signals 列表
#     personas/*.md         # 每个画像一个文件：YAML frontmatter + 描述正文
#
# 画像文件格式：
#   ---
#   id: crusader
#   name: The Crusader
#   archetype: activist
#   prior: 1.0
#   phrases: ["someone has to pay"]
#   weights:
#     CORPORATE_TRUST_LOW: 0.8
#     AGE_RANGE: {weight: 0.3, expected: 35, tolerance: 10}
#   ---
#   描述正文（用于生成参考向量）
# =============================================================================

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from jurymatch.catalog.validator import (
    CATALOG_DUPLICATE,
    CATALOG_NOT_FOUND,
    CATALOG_SCHEMA_INVALID,
    CATALOG_UNKNOWN_PERSONA,
    CATALOG_UNKNOWN_SIGNAL,
    CATALOG_WEIGHT_RANGE,
    CatalogValidationError,
)
from jurymatch.primitives.errors import SignalValueError
from jurymatch.primitives.models import (
    VALUE_TYPES,
    Persona,
    PersonaSignalWeight,
    Signal,
    SignalValue,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PersonaCatalog: 冻结的信号 / 画像 / 权重注册表
# =============================================================================


class PersonaCatalog:
    """信号目录与画像权重档案（只读）。

    构造时完成全部一致性校验：权重引用的信号 / 画像必须存在，
    权重取值必须在 [-1, 1] 内，id 不得重复。
    """

    def __init__(
        self,
        signals: Iterable[Signal],
        personas: Iterable[Persona],
        weights: Iterable[PersonaSignalWeight],
        name: str = "inline",
        version: str = "0.1.0",
    ) -> None:
        self.name = name
        self.version = version

        self._signals: Dict[str, Signal] = {}
        for signal in signals:
            if signal.signal_id in self._signals:
                raise CatalogValidationError(
                    CATALOG_DUPLICATE, f"信号 id 重复: '{signal.signal_id}'"
                )
            if signal.value_type not in VALUE_TYPES:
                raise CatalogValidationError(
                    CATALOG_SCHEMA_INVALID,
                    f"信号 '{signal.signal_id}' 的 value_type 无效: '{signal.value_type}'",
                )
            self._signals[signal.signal_id] = signal

        self._personas: Dict[str, Persona] = {}
        for persona in personas:
            if persona.persona_id in self._personas:
                raise CatalogValidationError(
                    CATALOG_DUPLICATE, f"画像 id 重复: '{persona.persona_id}'"
                )
            self._personas[persona.persona_id] = persona

        self._by_persona: Dict[str, Dict[str, PersonaSignalWeight]] = {
            pid: {} for pid in self._personas
        }
        self._by_signal: Dict[str, List[str]] = {}
        for w in weights:
            if w.signal_id not in self._signals:
                raise CatalogValidationError(
                    CATALOG_UNKNOWN_SIGNAL,
                    f"画像 '{w.persona_id}' 的权重引用了未知信号: '{w.signal_id}'",
                )
            if w.persona_id not in self._personas:
                raise CatalogValidationError(
                    CATALOG_UNKNOWN_PERSONA,
                    f"权重引用了未知画像: '{w.persona_id}'",
                )
            if not -1.0 <= w.weight <= 1.0:
                raise CatalogValidationError(
                    CATALOG_WEIGHT_RANGE,
                    f"权重超出 [-1, 1]: {w.persona_id}/{w.signal_id}={w.weight}",
                )
            if w.signal_id in self._by_persona[w.persona_id]:
                raise CatalogValidationError(
                    CATALOG_DUPLICATE,
                    f"画像 '{w.persona_id}' 对信号 '{w.signal_id}' 的权重重复",
                )
            self._by_persona[w.persona_id][w.signal_id] = w
            self._by_signal.setdefault(w.signal_id, []).append(w.persona_id)

        for persona_ids in self._by_signal.values():
            persona_ids.sort()

    # -------------------------------------------------------------------------
    # 查询
    # -------------------------------------------------------------------------

    @property
    def signals(self) -> List[Signal]:
        return [self._signals[sid] for sid in sorted(self._signals)]

    @property
    def personas(self) -> List[Persona]:
        """按 persona_id 稳定排序的画像列表。"""
        return [self._personas[pid] for pid in sorted(self._personas)]

    @property
    def persona_ids(self) -> List[str]:
        return sorted(self._personas)

    def signal(self, signal_id: str) -> Optional[Signal]:
        return self._signals.get(signal_id)

    def has_signal(self, signal_id: str) -> bool:
        return signal_id in self._signals

    def persona(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    def weights_for(self, persona_id: str) -> Dict[str, PersonaSignalWeight]:
        """画像的权重档案：signal_id → PersonaSignalWeight。"""
        return dict(self._by_persona.get(persona_id, {}))

    def weight(self, persona_id: str, signal_id: str) -> Optional[PersonaSignalWeight]:
        return self._by_persona.get(persona_id, {}).get(signal_id)

    def personas_weighting(self, signal_id: str) -> List[str]:
        """对该信号声明了权重的画像 id（排序）。"""
        return list(self._by_signal.get(signal_id, []))

    def __len__(self) -> int:
        return len(self._personas)

    @property
    def content_hash(self) -> str:
        """目录内容的 SHA256 哈希（用于缓存与审计）。"""
        payload = json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    # -------------------------------------------------------------------------
    # 序列化
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        personas = []
        for persona in self.personas:
            weights: Dict[str, Any] = {}
            for sid, w in sorted(self._by_persona[persona.persona_id].items()):
                entry: Dict[str, Any] = {"weight": w.weight}
                if w.expected is not None:
                    entry["expected"] = w.expected.raw
                if w.tolerance is not None:
                    entry["tolerance"] = w.tolerance
                weights[sid] = entry
            personas.append({
                "id": persona.persona_id,
                "name": persona.name,
                "archetype": persona.archetype,
                "description": persona.description,
                "prior": persona.prior,
                "phrases": list(persona.phrases),
                "embedding": list(persona.embedding) if persona.embedding else None,
                "weights": weights,
            })
        return {
            "name": self.name,
            "version": self.version,
            "signals": [
                {
                    "id": s.signal_id,
                    "name": s.name,
                    "category": s.category,
                    "value_type": s.value_type,
                    "possible_values": list(s.possible_values),
                    "patterns": list(s.patterns),
                    "source_field": s.source_field,
                    "description": s.description,
                }
                for s in self.signals
            ],
            "personas": personas,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PersonaCatalog:
        """从字典构建目录（代码内联目录 / 测试）。

        data 格式与 to_dict() 输出一致；权重既可写作数字，也可写作
        {weight, expected, tolerance} 字典。
        """
        if not isinstance(data, dict):
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"目录数据必须为字典，实际类型: {type(data).__name__}",
            )
        signals = [_parse_signal(item) for item in data.get("signals") or []]
        signal_types = {s.signal_id: s.value_type for s in signals}

        personas: List[Persona] = []
        weights: List[PersonaSignalWeight] = []
        for item in data.get("personas") or []:
            persona, persona_weights = _parse_persona(item, signal_types)
            personas.append(persona)
            weights.extend(persona_weights)

        return cls(
            signals=signals,
            personas=personas,
            weights=weights,
            name=str(data.get("name", "inline")),
            version=str(data.get("version", "0.1.0")),
        )


# =============================================================================
# 解析辅助函数
# =============================================================================


def _parse_signal(item: Dict[str, Any]) -> Signal:
    if not isinstance(item, dict) or not item.get("id"):
        raise CatalogValidationError(
            CATALOG_SCHEMA_INVALID, f"信号定义缺少 id 字段: {item!r}"
        )
    return Signal(
        signal_id=str(item["id"]),
        name=str(item.get("name") or item["id"]),
        category=str(item.get("category", "")),
        value_type=str(item.get("value_type", "")),
        possible_values=tuple(str(v) for v in item.get("possible_values") or ()),
        patterns=tuple(str(p) for p in item.get("patterns") or ()),
        source_field=item.get("source_field"),
        description=str(item.get("description", "")),
    )


def _parse_persona(
    item: Dict[str, Any],
    signal_types: Dict[str, str],
    description: Optional[str] = None,
) -> Tuple[Persona, List[PersonaSignalWeight]]:
    if not isinstance(item, dict) or not item.get("id"):
        raise CatalogValidationError(
            CATALOG_SCHEMA_INVALID, f"画像定义缺少 id 字段: {item!r}"
        )
    persona_id = str(item["id"])

    embedding = item.get("embedding")
    prior = item.get("prior")
    persona = Persona(
        persona_id=persona_id,
        name=str(item.get("name") or persona_id),
        archetype=str(item.get("archetype", "")),
        description=(
            description if description is not None
            else str(item.get("description") or "")
        ),
        embedding=tuple(float(x) for x in embedding) if embedding else None,
        phrases=tuple(str(p) for p in item.get("phrases") or ()),
        prior=float(prior) if prior is not None else None,
    )

    weights: List[PersonaSignalWeight] = []
    raw_weights = item.get("weights") or {}
    if not isinstance(raw_weights, dict):
        raise CatalogValidationError(
            CATALOG_SCHEMA_INVALID,
            f"画像 '{persona_id}' 的 weights 必须为字典",
        )
    for signal_id, spec in raw_weights.items():
        if signal_id not in signal_types:
            raise CatalogValidationError(
                CATALOG_UNKNOWN_SIGNAL,
                f"画像 '{persona_id}' 的权重引用了未知信号: '{signal_id}'",
            )
        if isinstance(spec, dict):
            weight = spec.get("weight")
            expected_raw = spec.get("expected")
            tolerance = spec.get("tolerance")
        else:
            weight, expected_raw, tolerance = spec, None, None
        try:
            weight = float(weight)
        except (TypeError, ValueError) as exc:
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"画像 '{persona_id}' 对信号 '{signal_id}' 的权重不是数字: {weight!r}",
            ) from exc

        expected = None
        if expected_raw is not None:
            try:
                expected = SignalValue.coerce(signal_types[signal_id], expected_raw)
            except SignalValueError as exc:
                raise CatalogValidationError(
                    CATALOG_SCHEMA_INVALID,
                    f"画像 '{persona_id}' 对信号 '{signal_id}' 的期望值无效: {exc.message}",
                ) from exc

        weights.append(PersonaSignalWeight(
            persona_id=persona_id,
            signal_id=str(signal_id),
            weight=weight,
            expected=expected,
            tolerance=float(tolerance) if tolerance is not None else None,
        ))
    return persona, weights


# =============================================================================
# CatalogManager: 目录发现与加载
# =============================================================================


class CatalogManager:
    """画像目录发现与加载。

    生命周期：discover -> load -> freeze
    """

    _DEFAULT_SEARCH_DIRS = (
        "catalogs",
    )
    _HOME_SEARCH_DIRS = (
        ".config/jurymatch/catalogs",
    )
    _SIGNALS_FILE = "signals.yaml"

    def __init__(self, search_paths: Optional[List[Path]] = None) -> None:
        """初始化 CatalogManager。

        Args:
            search_paths: 目录搜索路径列表。为 None 时使用默认扫描路径：
                  1. {cwd}/catalogs
                  2. ~/.config/jurymatch/catalogs
        """
        self._search_paths: List[Path] = (
            list(search_paths) if search_paths else self._build_default_paths()
        )
        self._discovered: Dict[str, Dict[str, Any]] = {}

    def _build_default_paths(self) -> List[Path]:
        paths: List[Path] = []
        cwd = Path.cwd()
        for subdir in self._DEFAULT_SEARCH_DIRS:
            paths.append(cwd / subdir)
        home = Path.home()
        for subdir in self._HOME_SEARCH_DIRS:
            paths.append(home / subdir)
        return paths

    # -------------------------------------------------------------------------
    # discover: 扫描目录查找 signals.yaml
    # -------------------------------------------------------------------------

    def discover(self) -> List[Dict[str, Any]]:
        """发现所有可用的目录。同名目录先扫描到者胜出，隐藏目录被忽略。

        Returns:
            [{"name": str, "description": str, "path": Path}, ...]
        """
        self._discovered.clear()
        results: List[Dict[str, Any]] = []

        for search_dir in self._search_paths:
            if not search_dir.is_dir():
                logger.debug("搜索路径不存在，跳过: %s", search_dir)
                continue

            for catalog_dir in sorted(search_dir.iterdir()):
                if not catalog_dir.is_dir() or catalog_dir.name.startswith("."):
                    continue
                signals_file = catalog_dir / self._SIGNALS_FILE
                if not signals_file.is_file():
                    continue

                try:
                    header = self._read_yaml(signals_file)
                except CatalogValidationError as exc:
                    logger.warning("解析 %s 失败，跳过: %s", signals_file, exc)
                    continue

                name = str(header.get("name") or catalog_dir.name)
                if name in self._discovered:
                    logger.debug(
                        "目录 '%s' 已发现于 %s，忽略重复: %s",
                        name, self._discovered[name]["path"], catalog_dir,
                    )
                    continue

                entry = {
                    "name": name,
                    "description": header.get("description", ""),
                    "path": catalog_dir,
                }
                self._discovered[name] = entry
                results.append(entry)
                logger.info("发现画像目录: %s @ %s", name, catalog_dir)

        return results

    # -------------------------------------------------------------------------
    # load: 加载指定目录
    # -------------------------------------------------------------------------

    def load(
        self,
        catalog_name: str,
        catalog_path: Optional[Path] = None,
    ) -> PersonaCatalog:
        """加载指定目录。

        如果提供了 catalog_path，直接从该路径加载（跳过 discover）；
        否则从已发现的目录中按 name 匹配。

        Raises:
            CatalogValidationError: 目录不存在或内容不合法。
        """
        if catalog_path is not None:
            catalog_dir = Path(catalog_path)
        else:
            if not self._discovered:
                self.discover()
            if catalog_name not in self._discovered:
                raise CatalogValidationError(
                    CATALOG_NOT_FOUND,
                    f"未找到画像目录: '{catalog_name}'（已扫描路径: {self._search_paths}）",
                )
            catalog_dir = Path(self._discovered[catalog_name]["path"])

        signals_file = catalog_dir / self._SIGNALS_FILE
        if not signals_file.is_file():
            raise CatalogValidationError(
                CATALOG_NOT_FOUND,
                f"{self._SIGNALS_FILE} 文件不存在: {signals_file}",
            )

        header = self._read_yaml(signals_file)
        signals = [_parse_signal(item) for item in header.get("signals") or []]
        signal_types = {s.signal_id: s.value_type for s in signals}

        personas: List[Persona] = []
        weights: List[PersonaSignalWeight] = []
        personas_dir = catalog_dir / "personas"
        if personas_dir.is_dir():
            for persona_file in sorted(personas_dir.glob("*.md")):
                if persona_file.name.startswith("."):
                    continue
                frontmatter, body = self._parse_frontmatter(persona_file)
                frontmatter.setdefault("id", persona_file.stem)
                persona, persona_weights = _parse_persona(
                    frontmatter, signal_types, description=body,
                )
                personas.append(persona)
                weights.extend(persona_weights)
        else:
            logger.warning("画像目录缺少 personas/ 子目录: %s", catalog_dir)

        catalog = PersonaCatalog(
            signals=signals,
            personas=personas,
            weights=weights,
            name=str(header.get("name") or catalog_dir.name),
            version=str(header.get("version", "0.1.0")),
        )
        logger.info(
            "画像目录 '%s' v%s 加载完成 (%d signals, %d personas)",
            catalog.name, catalog.version, len(signals), len(personas),
        )
        return catalog

    # -------------------------------------------------------------------------
    # 内部方法
    # -------------------------------------------------------------------------

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID, f"YAML 解析失败: {path}: {exc}",
            ) from exc
        if not isinstance(data, dict):
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"{path} 必须为字典，实际类型: {type(data).__name__}",
            )
        return data

    @staticmethod
    def _parse_frontmatter(persona_file: Path) -> Tuple[Dict[str, Any], str]:
        """解析画像文件的 YAML frontmatter，返回 (元数据, 正文)。"""
        text = persona_file.read_text(encoding="utf-8")
        if not text.startswith("---"):
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"画像文件缺少 YAML frontmatter（文件必须以 --- 开头）: {persona_file}",
            )

        second_sep = text.find("---", 3)
        if second_sep == -1:
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"画像文件 YAML frontmatter 缺少结束标记 ---: {persona_file}",
            )

        yaml_text = text[3:second_sep].strip()
        try:
            result = yaml.safe_load(yaml_text) if yaml_text else {}
        except yaml.YAMLError as exc:
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"画像文件 YAML 解析失败: {persona_file}: {exc}",
            ) from exc

        if not isinstance(result, dict):
            raise CatalogValidationError(
                CATALOG_SCHEMA_INVALID,
                f"画像 frontmatter 必须为字典，实际类型: {type(result).__name__}",
            )

        body = text[second_sep + 3:].strip()
        return result, body
