import json
import os
import re
import sys
from typing import Dict, Any, List, NamedTuple, Optional, Tuple, Union

import requests
import yaml
from deepdiff import DeepDiff


EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_REQUEST_ERROR = 2
EXIT_INTERRUPTED = 130

ON_ERROR_ABORT = "abort"
ON_ERROR_SKIP = "skip"
ON_ERROR_POLICIES = (ON_ERROR_ABORT, ON_ERROR_SKIP)

UNCHANGED = "unchanged"
ADDED = "added"
REMOVED = "removed"


class ApiDiffError(Exception):
    """Erro base do api-diff"""


class ConfigError(ApiDiffError):
    """Arquivo de configuração ausente, ilegível ou inválido"""


class FetchError(ApiDiffError):
    """Falha ao obter a resposta de um host"""
    def __init__(self, message: str, host: str, url: str):
        super().__init__(message)
        self.host = host
        self.url = url


class TransportError(FetchError):
    """Falha de conexão (DNS, conexão recusada, timeout...)"""


class ApiError(FetchError):
    """O host respondeu com status diferente de 200"""
    def __init__(self, host: str, url: str, status_code: int, body: str):
        super().__init__(f"API error: {body}", host, url)
        self.status_code = status_code
        self.body = body


class Palette(NamedTuple):
    """Marcadores usados pelo renderer para linhas adicionadas/removidas"""
    added: str
    removed: str
    reset: str


COLOR_PALETTE = Palette(added="\033[32m", removed="\033[31m", reset="\033[0m")
PLAIN_PALETTE = Palette(added="+", removed="-", reset="")


class ApiTest:
    """Um endpoint parametrizado e seus conjuntos de parâmetros"""
    def __init__(self, api: str, params: Tuple[Dict[str, str], ...] = (),
                 name: Optional[str] = None, enabled: bool = True):
        self.api = api
        # sem params o teste roda uma vez com o template como está
        self.params = tuple(params) or ({},)
        self.name = name or api
        self.enabled = enabled


class ApiDiffConfig:
    """Configuração carregada do YAML"""
    def __init__(self, hosts: Tuple[str, ...], tests: Tuple[ApiTest, ...],
                 timeout: Optional[float] = None, on_error: str = ON_ERROR_ABORT,
                 headers: Optional[Dict[str, str]] = None):
        self.hosts = tuple(hosts)
        self.tests = tuple(tests)
        self.timeout = timeout
        self.on_error = on_error
        self.headers = dict(headers or {})

    @property
    def baseline(self) -> str:
        return self.hosts[0]


class HostResponse:
    """Resposta de um host para um endpoint resolvido"""
    def __init__(self, host: str, url: str, status_code: Optional[int] = None,
                 body: str = "", error: Optional[FetchError] = None):
        self.host = host
        self.url = url
        self.status_code = status_code
        self.body = body
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None


class DiffLine(NamedTuple):
    """Linha do diff e sua classificação (UNCHANGED, ADDED ou REMOVED)"""
    text: str
    kind: str


class ComparisonResult:
    """Resultado da comparação baseline x host para um endpoint"""
    def __init__(self, endpoint: str, baseline: str, host: str):
        self.endpoint = endpoint
        self.baseline = baseline
        self.host = host
        self.identical = False
        self.skipped = False
        self.lines: List[DiffLine] = []
        self.differences: Dict[str, List[str]] = {}
        self.warnings: List[str] = []
        self.error_message = None


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def load_config(config_file: str) -> ApiDiffConfig:
    """Carrega e valida a configuração do arquivo YAML"""
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"unable to read config file {config_file}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"unable to parse config file {config_file}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {config_file} must contain a mapping")

    settings = raw.get('config') or {}
    if not isinstance(settings, dict):
        raise ConfigError("'config' must be a mapping")

    hosts = raw.get('hosts') or []
    if not isinstance(hosts, list) or not all(isinstance(h, str) and h for h in hosts):
        raise ConfigError("'hosts' must be a list of base URLs")
    if len(hosts) < 2:
        raise ConfigError("at least 2 hosts are required to compare responses")

    raw_tests = raw.get('tests') or []
    if not isinstance(raw_tests, list):
        raise ConfigError("'tests' must be a list")

    tests = []
    for index, test in enumerate(raw_tests, start=1):
        if not isinstance(test, dict) or not isinstance(test.get('api'), str):
            raise ConfigError(f"test #{index} must define an 'api' endpoint")

        enabled = test.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ConfigError(f"test '{test['api']}': 'enabled' must be true or false")

        params = test.get('params') or []
        if not isinstance(params, list) or not all(isinstance(p, dict) for p in params):
            raise ConfigError(f"test '{test['api']}': 'params' must be a list of mappings")

        tests.append(ApiTest(
            api=test['api'],
            params=tuple({str(k): _stringify(v) for k, v in p.items()} for p in params),
            name=test.get('name'),
            enabled=enabled,
        ))

    timeout = settings.get('timeout')
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError("'config.timeout' must be a positive number of seconds")

    on_error = settings.get('on_error', ON_ERROR_ABORT)
    if on_error not in ON_ERROR_POLICIES:
        raise ConfigError(f"'config.on_error' must be one of {', '.join(ON_ERROR_POLICIES)}")

    headers = settings.get('headers') or {}
    if not isinstance(headers, dict):
        raise ConfigError("'config.headers' must be a mapping")

    return ApiDiffConfig(
        hosts=tuple(hosts),
        tests=tuple(tests),
        timeout=timeout,
        on_error=on_error,
        headers={str(k): _stringify(v) for k, v in headers.items()},
    )


def substitute_params(api: str, params: Dict[str, str], prefix: str = "{", suffix: str = "}") -> str:
    """Substitui os placeholders prefix+nome+suffix pelos valores de params

    Varredura única: cada trecho do template é substituído no máximo uma vez
    e placeholders sem valor em params ficam como estão.
    """
    open_ = re.escape(prefix)
    pattern = re.compile(f"{open_}((?:(?!{open_}).)*?){re.escape(suffix)}", re.DOTALL)

    def _replace(match):
        name = match.group(1)
        if name in params:
            return str(params[name])
        return match.group(0)

    return pattern.sub(_replace, api)


def _reject_constant(name: str):
    raise ValueError(f"invalid JSON constant: {name}")


def normalize_body(raw: Union[str, bytes]) -> Tuple[str, bool]:
    """Formata um corpo JSON com indentação de 4 espaços, mantendo a ordem das chaves"""
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    try:
        # NaN e Infinity não são JSON
        document = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return "", False
    return json.dumps(document, indent=4, ensure_ascii=False), True


def fetch_response(session: requests.Session, host: str, endpoint: str,
                   timeout: Optional[float] = None) -> HostResponse:
    """Executa o GET em host+endpoint e classifica o resultado"""
    url = f"{host}{endpoint}"
    print(url, end="", flush=True)

    try:
        response = session.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        print(" [FAILED]")
        error = TransportError(f"failed to send request to [{url}] (host {host}): {e}", host, url)
        error.__cause__ = e
        return HostResponse(host, url, error=error)

    print(f" [HTTP-{response.status_code}]")

    body = response.text
    if response.status_code == 200:
        return HostResponse(host, url, response.status_code, body)

    error = ApiError(host, url, response.status_code, body)
    return HostResponse(host, url, response.status_code, body, error=error)


def _shortest_edit_script(lines1: List[str], lines2: List[str]) -> List[Tuple[str, str]]:
    """Script de edição mínimo (algoritmo O(ND) de Myers)

    Retorna pares (tag, linha) com tag 'equal', 'delete' ou 'insert'; as
    linhas 'equal' formam uma subsequência comum máxima das duas listas.
    """
    n, m = len(lines1), len(lines2)
    v = {1: 0}
    trace = []

    for d in range(n + m + 1):
        trace.append(dict(v))
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[k - 1] < v[k + 1]):
                x = v[k + 1]
            else:
                x = v[k - 1] + 1
            y = x - k
            while x < n and y < m and lines1[x] == lines2[y]:
                x += 1
                y += 1
            v[k] = x
            if x >= n and y >= m:
                break
        else:
            continue
        break

    # caminho de volta a partir de (n, m)
    script = []
    x, y = n, m
    for d in range(len(trace) - 1, -1, -1):
        v = trace[d]
        k = x - y
        if k == -d or (k != d and v[k - 1] < v[k + 1]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = v[prev_k]
        prev_y = prev_x - prev_k

        while x > prev_x and y > prev_y:
            x -= 1
            y -= 1
            script.append(('equal', lines1[x]))
        if d > 0:
            if x == prev_x:
                script.append(('insert', lines2[prev_y]))
            else:
                script.append(('delete', lines1[prev_x]))
        x, y = prev_x, prev_y

    script.reverse()
    return script


def _split_lines(text: str) -> List[str]:
    # só "\n" separa linhas; U+2028 e afins podem vir dentro de strings JSON
    return text.split("\n") if text else []


def compute_diff(left: str, right: str) -> List[DiffLine]:
    """Diff linha a linha entre left (baseline) e right"""
    kinds = {'equal': UNCHANGED, 'delete': REMOVED, 'insert': ADDED}
    script = _shortest_edit_script(_split_lines(left), _split_lines(right))
    return [DiffLine(line, kinds[tag]) for tag, line in script]


def render_diff(lines: List[DiffLine], palette: Palette = COLOR_PALETTE) -> str:
    """Aplica os marcadores da paleta às linhas adicionadas e removidas"""
    rendered = []
    for line in lines:
        if line.kind == ADDED:
            rendered.append(f"{palette.added}{line.text}{palette.reset}")
        elif line.kind == REMOVED:
            rendered.append(f"{palette.removed}{line.text}{palette.reset}")
        else:
            rendered.append(line.text)
    return "\n".join(rendered)


def summarize_differences(baseline_doc: Any, other_doc: Any) -> Dict[str, List[str]]:
    """Resumo estrutural (DeepDiff) agrupado por tipo de mudança"""
    diff = DeepDiff(baseline_doc, other_doc)
    summary = {}
    for change_type, changes in diff.items():
        if isinstance(changes, dict):
            paths = list(changes.keys())
        else:
            paths = list(changes)
        summary[change_type] = sorted(str(p) for p in paths)
    return summary


class APIComparator:
    """API Diff - compara a resposta de cada host com a do host baseline"""

    def __init__(self, config: ApiDiffConfig, palette: Palette = COLOR_PALETTE,
                 session: Optional[requests.Session] = None):
        self.config = config
        self.palette = palette
        self.session = session or requests.Session()
        self.session.headers.update(config.headers)
        self.comparison_results: List[ComparisonResult] = []

    def run(self) -> List[ComparisonResult]:
        """Executa todos os testes configurados"""
        enabled = [t for t in self.config.tests if t.enabled]
        print(f"\n{'='*60}")
        print(f"Running {len(enabled)} api tests against {len(self.config.hosts)} hosts")
        print(f"Baseline: {self.config.baseline}")
        print(f"{'='*60}\n")

        for test in self.config.tests:
            if not test.enabled:
                print(f"⏭️  {test.name} - DISABLED")
                continue
            for params in test.params:
                endpoint = substitute_params(test.api, params, "{", "}")
                self.comparison_results.extend(self._execute_comparison(endpoint))

        self._print_summary()
        return self.comparison_results

    def _execute_comparison(self, endpoint: str) -> List[ComparisonResult]:
        """Busca o endpoint em todos os hosts e compara cada um com o baseline"""
        print(f"######## Execute api test: {endpoint}")

        responses = []
        for host in self.config.hosts:
            response = fetch_response(self.session, host, endpoint, self.config.timeout)
            if response.ok:
                responses.append(response)
                continue

            if isinstance(response.error, ApiError) and self.config.on_error == ON_ERROR_SKIP:
                return self._skipped_results(endpoint, response.error)
            raise response.error

        baseline, others = responses[0], responses[1:]
        return [self._compare(endpoint, baseline, other) for other in others]

    def _skipped_results(self, endpoint: str, error: ApiError) -> List[ComparisonResult]:
        message = f"fetch failed for host {error.host}: {error.body}"
        print(message)

        results = []
        for host in self.config.hosts[1:]:
            result = ComparisonResult(endpoint, self.config.baseline, host)
            result.skipped = True
            result.error_message = message
            results.append(result)
        return results

    def _compare(self, endpoint: str, baseline: HostResponse, other: HostResponse) -> ComparisonResult:
        """Normaliza, calcula e imprime o diff baseline x host"""
        result = ComparisonResult(endpoint, baseline.host, other.host)

        texts = []
        for response in (baseline, other):
            pretty, ok = normalize_body(response.body)
            if not ok:
                warning = f"warning: response from {response.host} is not valid JSON, comparing raw text"
                result.warnings.append(warning)
                print(warning)
                pretty = response.body
            texts.append(pretty)

        result.lines = compute_diff(texts[0], texts[1])
        result.identical = all(line.kind == UNCHANGED for line in result.lines)

        if not result.identical and not result.warnings:
            result.differences = summarize_differences(json.loads(texts[0]), json.loads(texts[1]))

        print(f"--- {baseline.host} vs {other.host}")
        print(render_diff(result.lines, self.palette))
        self._print_differences(result)
        return result

    def _print_differences(self, result: ComparisonResult):
        if result.identical:
            print(f"✅ {result.host} - IDENTICAL TO BASELINE")
            return

        print(f"❌ {result.host} - DIFFERENT FROM BASELINE")
        if result.warnings:
            return
        if not result.differences:
            print("   only key order differs")
        for change_type, paths in result.differences.items():
            for path in paths:
                print(f"   {change_type}: {path}")

    def _print_summary(self):
        """Imprime o resumo das comparações"""
        total = len(self.comparison_results)
        skipped = sum(1 for r in self.comparison_results if r.skipped)
        identical = sum(1 for r in self.comparison_results if r.identical)
        different = total - skipped - identical

        print(f"\n{'='*60}")
        print("COMPARISON SUMMARY")
        print(f"{'='*60}")
        print(f"Total comparisons: {total}")
        print(f"✅ Identical: {identical}")
        print(f"❌ Different: {different}")
        if skipped:
            print(f"⏭️  Skipped: {skipped}")

        unparsable = [r for r in self.comparison_results if r.warnings]
        if unparsable:
            print("\nComparisons with bodies that could not be parsed as JSON:")
            for result in unparsable:
                print(f"  - {result.endpoint} ({result.host})")

    def cleanup(self):
        """Libera recursos"""
        self.session.close()


def use_color(stream=None) -> bool:
    """Decide se a saída deve ser colorida"""
    stream = stream or sys.stdout
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR"):
        return True
    return hasattr(stream, "isatty") and stream.isatty()


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    import argparse

    parser = argparse.ArgumentParser(
        prog='api-diff',
        description='API Diff - Compare the responses of several hosts for the same endpoints'
    )
    parser.add_argument('-c', '--config', help='YAML configuration file (required)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Per-request timeout in seconds (default: no timeout)')
    parser.add_argument('--on-error', choices=ON_ERROR_POLICIES, default=None,
                        help='What to do when a host answers with a non-200 status')
    parser.add_argument('--no-color', action='store_true', help='Disable colored output')

    args = parser.parse_args(argv)

    if not args.config:
        parser.print_usage(sys.stderr)
        print("api-diff: error: you have to define the config file (-c/--config)", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.timeout is not None and args.timeout <= 0:
        print("❌ Configuration error: --timeout must be positive", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    print(f"Reading config: {args.config}")
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    # opções da linha de comando têm precedência sobre o arquivo
    config = ApiDiffConfig(
        hosts=config.hosts,
        tests=config.tests,
        timeout=args.timeout if args.timeout is not None else config.timeout,
        on_error=args.on_error or config.on_error,
        headers=config.headers,
    )

    palette = PLAIN_PALETTE if args.no_color or not use_color() else COLOR_PALETTE
    comparator = APIComparator(config, palette)

    try:
        comparator.run()
    except FetchError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return EXIT_REQUEST_ERROR
    except KeyboardInterrupt:
        print("\n\n⚠️  Comparison interrupted by user")
        return EXIT_INTERRUPTED
    finally:
        comparator.cleanup()

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
