"""
Text-based Tool Call Extractor

Парсер для извлечения вызовов инструментов из текста LLM.
Используется для провайдеров без native tool calling (llama.cpp и т.п.),
которые часто оборачивают вызов в собственную разметку вместо чистого JSON.

Поддерживаемые форматы (все сканируются по всему тексту, по порядку):
1. Канонический: {"tool_name": "add", "tool_args": {"a": 2, "b": 3}}
2. Маркер с JSON: to=getWeather tool_input {"city": "Jakarta"}
                  to=search code<|message|>{"q": {"nested": true}}
3. Маркер с тегом: to=convert<<json\n{"km": 5}
4. Маркер с пробелом: to= list_categories code<|message|>{...}
5. Function-style JSON: {"name": "ping", "arguments": {"host": "1.1.1.1"}}
"""

import re
import json
import time
import logging
from typing import List, Dict, Any, Optional, Set
from dataclasses import dataclass, field

from .base import ToolCall, ToolCallSource

logger = logging.getLogger(__name__)


# Спецтокены llama.cpp / harmony, которые не должны попасть в финальный ответ
SPECIAL_TOKENS = (
    "<|start|>",
    "<|end|>",
    "<|im_start|>",
    "<|im_end|>",
    "<|im_reply|>",
    "<|channel|>",
    "<|message|>",
    "<|call|>",
    "<|return|>",
)

NUMERIC_RE = re.compile(r'^-?\d+(?:\.\d+)?$')


@dataclass
class ExtractionResult:
    """Результат извлечения с деталями для отладки"""
    tool_calls: List[ToolCall] = field(default_factory=list)
    patterns_used: List[str] = field(default_factory=list)
    dropped: int = 0

    @property
    def success(self) -> bool:
        return len(self.tool_calls) > 0


class ToolCallExtractor:
    """
    Парсер tool calls из свободного текста модели

    В отличие от каскада "до первого успеха", здесь применяются все паттерны:
    один ответ может содержать несколько разных вызовов.

    Правила дедупликации:
    - паттерны 1-3 не выдают повторно JSON-объект, открывающая скобка которого
      уже была использована более ранним паттерном (разные диалекты разметки
      часто совпадают на одном и том же фрагменте);
    - паттерны 4 и 5 пропускают вызов, если инструмент с таким именем уже найден.
      Известное ограничение: два вызова одного инструмента с разными аргументами
      в одном ответе схлопнутся в один.
    - в маркерах to=<ns>.<name> префикс пространства имён (harmony: functions.)
      отбрасывается, вызов идёт к инструменту <name>.

    Пример использования:
        extractor = ToolCallExtractor()
        calls = extractor.extract(llm_response_text)
    """

    ID_PREFIX = "call"

    # Фильтр между маркером и JSON не должен перескакивать через следующий маркер
    _FILLER = r'(?:(?!to=)[^{])*'
    # harmony-префикс пространства имён: to=functions.getWeather -> getWeather
    _NAME = r'(?:\w+\.)?(\w+)'

    PATTERNS = {
        # 1. Канонический формат из инструкции (один уровень вложенности)
        "canonical": re.compile(
            r'\{\s*"tool_name"\s*:\s*"([^"]+)"\s*,\s*"tool_args"\s*:\s*(\{[^{}]*\})\s*\}'
        ),
        # 2. to=<name> [tool_input] [filler] {
        "marker_inline": re.compile(r'to=' + _NAME + r'\s*(?:tool_input\s+)?' + _FILLER + r'(\{)'),
        # 3. to=<name><<json\n{
        "marker_json_tag": re.compile(r'to=' + _NAME + r'<<json\s*\n?\s*(\{)'),
        # 4. to= <name> [filler] {
        "marker_spaced": re.compile(r'to=\s+' + _NAME + r'\s*' + _FILLER + r'(\{)'),
        # 5. {"name": "<name>", "arguments": {...}}
        "function_json": re.compile(
            r'\{\s*["\']name["\']\s*:\s*["\'](\w+)["\']\s*,\s*["\']arguments["\']\s*:\s*(\{[^}]*\})\s*\}'
        ),
    }

    def __init__(self, debug: bool = False):
        """
        Args:
            debug: Логировать найденные вызовы на уровне INFO
        """
        self.debug = debug

    def extract(self, text: str) -> List[ToolCall]:
        """
        Извлечь все tool calls из текста

        Args:
            text: Текст ответа LLM

        Returns:
            Список ToolCall (пустой, если ничего не распознано)
        """
        return self.extract_with_details(text).tool_calls

    def extract_with_details(self, text: str) -> ExtractionResult:
        """
        Извлечь tool calls с информацией о сработавших паттернах

        Returns:
            ExtractionResult с деталями извлечения
        """
        result = ExtractionResult()
        if not text:
            return result

        consumed: Set[int] = set()

        self._scan_canonical(text, result, consumed)
        self._scan_marker(text, "marker_inline", result, consumed)
        self._scan_marker(text, "marker_json_tag", result, consumed)
        self._scan_marker(text, "marker_spaced", result, consumed, dedup_by_name=True)
        self._scan_function_json(text, result)

        if result.tool_calls:
            log = logger.info if self.debug else logger.debug
            log(f"Extracted {len(result.tool_calls)} tool calls using {result.patterns_used}")
        else:
            logger.debug("No tool calls found in text")

        return result

    # ===== Паттерны =====

    def _scan_canonical(self, text: str, result: ExtractionResult, consumed: Set[int]) -> None:
        """Паттерн 1: канонический ответ по инструкции, с приведением чисел"""
        for match in self.PATTERNS["canonical"].finditer(text):
            name, args_str = match.group(1), match.group(2)
            arguments = self._parse_arguments(args_str, "canonical", result)
            if arguments is None:
                continue
            consumed.add(match.start())
            consumed.add(match.start(2))
            self._add(result, "canonical", name, self._coerce_numeric(arguments), match.group(0))

    def _scan_marker(
        self,
        text: str,
        pattern_name: str,
        result: ExtractionResult,
        consumed: Set[int],
        dedup_by_name: bool = False,
    ) -> None:
        """Паттерны 2-4: маркер to=<name>, затем JSON с вложенными скобками"""
        for match in self.PATTERNS[pattern_name].finditer(text):
            name = match.group(1)
            json_start = match.start(2)

            if json_start in consumed:
                continue
            consumed.add(json_start)

            args_str = self._extract_balanced_json(text, json_start)
            if args_str is None:
                logger.warning(f"Unbalanced JSON after marker to={name}; skipping")
                result.dropped += 1
                continue

            arguments = self._parse_arguments(args_str, pattern_name, result)
            if arguments is None:
                continue

            if dedup_by_name and self._has_name(result, name):
                continue

            self._add(result, pattern_name, name, arguments, text[match.start():json_start + len(args_str)])

    def _scan_function_json(self, text: str, result: ExtractionResult) -> None:
        """Паттерн 5: {"name": ..., "arguments": {...}}, допускает одинарные кавычки"""
        for match in self.PATTERNS["function_json"].finditer(text):
            name, args_str = match.group(1), match.group(2)
            arguments = self._parse_arguments(args_str, "function_json", result, allow_single_quotes=True)
            if arguments is None:
                continue
            if self._has_name(result, name):
                continue
            self._add(result, "function_json", name, arguments, match.group(0))

    # ===== Вспомогательные методы =====

    @staticmethod
    def _extract_balanced_json(text: str, start: int) -> Optional[str]:
        """
        Вырезать JSON-объект, начинающийся с text[start] == '{'

        Считает глубину скобок (без учёта скобок внутри строк) и останавливается,
        когда глубина возвращается к нулю. Regex не может надёжно ограничить
        вложенный JSON.

        Returns:
            Подстрока с объектом или None, если скобки не сбалансированы
        """
        depth = 0
        in_string = False
        escaped = False

        for i in range(start, len(text)):
            char = text[i]

            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]

        return None

    def _parse_arguments(
        self,
        args_str: str,
        pattern_name: str,
        result: ExtractionResult,
        allow_single_quotes: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Распарсить аргументы; битый JSON отбрасывает только этого кандидата"""
        try:
            arguments = json.loads(args_str)
        except json.JSONDecodeError as e:
            arguments = None
            if allow_single_quotes:
                try:
                    arguments = json.loads(args_str.replace("'", '"'))
                except json.JSONDecodeError:
                    pass
            if arguments is None:
                logger.warning(f"Failed to parse tool arguments ({pattern_name}): {args_str[:100]} ({e})")
                result.dropped += 1
                return None

        if not isinstance(arguments, dict):
            logger.warning(f"Tool arguments ({pattern_name}) are not an object: {args_str[:100]}")
            result.dropped += 1
            return None

        return arguments

    @staticmethod
    def _coerce_numeric(arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Некоторые модели пишут "5" вместо 5 - приводим такие строки к числам"""
        coerced = {}
        for key, value in arguments.items():
            if isinstance(value, str) and NUMERIC_RE.match(value.strip()):
                value = value.strip()
                coerced[key] = float(value) if "." in value else int(value)
            else:
                coerced[key] = value
        return coerced

    @staticmethod
    def _has_name(result: ExtractionResult, name: str) -> bool:
        return any(call.name == name for call in result.tool_calls)

    def _add(self, result: ExtractionResult, pattern_name: str, name: str,
             arguments: Dict[str, Any], raw_text: str) -> None:
        call = ToolCall(
            id=self._make_id(name, len(result.tool_calls)),
            name=name,
            arguments=arguments,
            source=ToolCallSource.TEXT_PARSED,
            raw_text=raw_text[:200],
        )
        result.tool_calls.append(call)
        if pattern_name not in result.patterns_used:
            result.patterns_used.append(pattern_name)
        if self.debug:
            logger.info(f"Parsed tool call ({pattern_name}): {name} with args: {arguments}")

    def _make_id(self, name: str, index: int) -> str:
        """Префикс + время в мс + порядковый номер + имя инструмента"""
        return f"{self.ID_PREFIX}_{time.time_ns() // 1_000_000}_{index}_{name}"


def clean_response(text: str) -> str:
    """
    Очистить ответ llama.cpp от спецтокенов и служебных префиксов

    Args:
        text: Сырой текст ответа модели

    Returns:
        Текст для пользователя
    """
    if not text:
        return ""

    # Рассуждения модели до первого <|end|>
    cleaned = re.sub(r'^[\s\S]*?<\|end\|>', '', text)
    # Префикс <|start|>assistant<|channel|>final|...>
    cleaned = re.sub(r'<\|start\|>assistant<\|channel\|>[^>]*>', '', cleaned)

    for token in SPECIAL_TOKENS:
        cleaned = cleaned.replace(token, "")

    return cleaned.strip()


# Глобальный экземпляр для удобства
default_extractor = ToolCallExtractor()


def extract_tool_calls(text: str) -> List[ToolCall]:
    """
    Удобная функция для извлечения tool calls

    Args:
        text: Текст ответа LLM

    Returns:
        Список ToolCall объектов
    """
    return default_extractor.extract(text)
