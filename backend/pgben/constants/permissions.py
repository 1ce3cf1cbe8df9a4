"""Central definitions of permission codes, composites and role defaults.
Extend cautiously; never rename codes silently. Create new ones and deprecate old via migration if needed.
"""
from __future__ import annotations
from typing import Dict, List

# module -> resource.operation suffixes
MODULE_ACTIONS: Dict[str, List[str]] = {
    'cidadao': ['listar', 'ler', 'criar', 'editar', 'excluir', 'documento.ler', 'documento.enviar'],
    'solicitacao': ['listar', 'ler', 'criar', 'editar', 'cancelar', 'status.avaliar', 'status.aprovar', 'historico.ler'],
    'beneficio': ['listar', 'ler', 'criar', 'editar', 'excluir', 'concessao.aprovar'],
    'documento': ['ler', 'enviar', 'download', 'excluir'],
    'usuario': [
        'listar', 'ler', 'criar', 'editar', 'status.alterar',
        'senha.alterar', 'senha.alterar.outro',
        'permissao.ler', 'permissao.gerenciar',
    ],
    'unidade': ['listar', 'ler', 'criar', 'editar'],
    'configuracao': ['parametro.ler', 'parametro.editar', 'parametro.excluir'],
    'relatorio': ['ler', 'exportar'],
    'auditoria': ['log.ler'],
}

# Holding this permission globally is what makes a user an administrator.
ADMIN_PERMISSION = 'usuario.permissao.gerenciar'

CROSS_MODULE_COMPOSITES = ['*.*', '*.ler', '*.listar', '*.excluir']

# Scope a permission is bound to when neither the role nor the override names one.
DEFAULT_SCOPES: Dict[str, str] = {
    'solicitacao.status.avaliar': 'UNIT',
    'solicitacao.status.aprovar': 'UNIT',
    'usuario.senha.alterar': 'SELF',
}


def build_leaf_permission_codes() -> List[str]:
    codes: List[str] = []
    for module, actions in MODULE_ACTIONS.items():
        for act in actions:
            codes.append(f"{module}.{act}")
    return codes


def build_composite_permission_codes() -> List[str]:
    return [f"{module}.*" for module in MODULE_ACTIONS] + list(CROSS_MODULE_COMPOSITES)


def build_all_permission_codes() -> List[str]:
    return build_leaf_permission_codes() + build_composite_permission_codes()


ALL_PERMISSION_CODES = build_all_permission_codes()

ROLE_PRESETS: Dict[str, List[str]] = {
    'ADMIN': ['*.*'],
    'GESTOR': [
        'cidadao.*', 'solicitacao.*', 'beneficio.*', 'documento.*', 'relatorio.*',
        'unidade.listar', 'unidade.ler',
        'usuario.listar', 'usuario.ler', 'usuario.permissao.ler', 'usuario.senha.alterar',
        'configuracao.parametro.ler', 'auditoria.log.ler',
    ],
    'COORDENADOR': [
        'cidadao.listar', 'cidadao.ler', 'cidadao.criar', 'cidadao.editar',
        'solicitacao.listar', 'solicitacao.ler', 'solicitacao.status.avaliar',
        'solicitacao.status.aprovar', 'solicitacao.historico.ler',
        'beneficio.listar', 'beneficio.ler',
        'documento.ler', 'documento.download',
        'relatorio.ler', 'usuario.senha.alterar',
    ],
    'TECNICO': [
        'cidadao.listar', 'cidadao.ler', 'cidadao.criar', 'cidadao.editar',
        'cidadao.documento.ler', 'cidadao.documento.enviar',
        'solicitacao.listar', 'solicitacao.ler', 'solicitacao.criar', 'solicitacao.editar',
        'solicitacao.historico.ler',
        'beneficio.listar', 'beneficio.ler',
        'documento.ler', 'documento.enviar', 'documento.download',
        'usuario.senha.alterar',
    ],
    'CIDADAO': [
        'cidadao.ler', 'solicitacao.listar', 'solicitacao.ler', 'solicitacao.criar',
        'documento.ler', 'documento.enviar', 'usuario.senha.alterar',
    ],
}

ADMIN_ROLE = 'ADMIN'
