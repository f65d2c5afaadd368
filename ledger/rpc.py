"""Async JSON-RPC client for the ledger node"""
import itertools
from typing import Any, Dict, Optional

import httpx

class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        method: Optional[str] = None,
        data: Any = None
    ):
        self.code = code
        self.method = method
        self.data = data
        super().__init__(f"RPC Error [{code}] in {method}: {message}" if code else message)

class NodeConnectionError(RPCError):
    """Raised when the node could not be reached or returned garbage"""
    pass

class SolanaRPCError(RPCError):
    """Error object returned by the node
    
    Common error codes:
    -32002 - Transaction simulation failed (preflight)
    -32003 - Transaction signature verification failure
    -32004 - Block not available for slot
    -32005 - Node is unhealthy
    -32007 - Slot was skipped or missing
    -32009 - Slot was skipped or missing in long-term storage
    -32015 - Transaction version not supported
    -32016 - Minimum context slot has not been reached
    -32600 - Invalid request
    -32601 - Method not found
    -32602 - Invalid params
    -32603 - Internal error
    """
    # Map of known node error codes to human-readable messages
    ERROR_MESSAGES = {
        -32002: "Transaction simulation failed",
        -32003: "Transaction signature verification failure",
        -32004: "Block not available for slot",
        -32005: "Node is unhealthy",
        -32007: "Slot was skipped or missing",
        -32009: "Slot was skipped or missing in long-term storage",
        -32015: "Transaction version not supported",
        -32016: "Minimum context slot has not been reached",
        -32600: "Invalid request",
        -32601: "Method not found",
        -32602: "Invalid params",
        -32603: "Internal error",
    }
    
    def __init__(self, message: str, code: int, method: str, data: Any = None):
        # Get standard message for known error codes
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        # Combine standard message with specific message if different
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(full_msg, code, method, data)
    
    @property
    def logs(self) -> list:
        """Program log lines attached to simulation failures, if any"""
        if isinstance(self.data, dict):
            return list(self.data.get('logs') or [])
        return []

class RPCMethod:
    """Descriptor class for RPC methods"""
    def __init__(self, method_name: str):
        self.method_name = method_name
    
    def __get__(self, obj, objtype=None):
        if obj is None:
            return self
        
        async def caller(*args) -> Any:
            return await obj._call_method(self.method_name, *args)
        
        return caller

class SolanaRPC:
    """Ledger JSON-RPC client
    
    The client owns an ``httpx.AsyncClient`` between ``open()`` and
    ``close()``. A custom ``transport`` can be passed for tests.
    """
    
    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)
    
    @property
    def is_open(self) -> bool:
        return self._client is not None
    
    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={'content-type': 'application/json'}
            )
    
    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
    
    async def _call_method(self, method: str, *args) -> Any:
        """Make RPC call to the ledger node
        
        Args:
            method: RPC method name
            *args: Method arguments
            
        Returns:
            The ``result`` member of the response
            
        Raises:
            NodeConnectionError: Connection to node failed or response was malformed
            SolanaRPCError: Node returned an error object
        """
        if self._client is None:
            raise RuntimeError("RPC client is not open")
        
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(args),
            "id": next(self._ids)
        }
        
        try:
            response = await self._client.post(self.url, json=payload)
            
            # Try to parse response even if status code is error
            try:
                result: Dict[str, Any] = response.json()
            except ValueError:
                response.raise_for_status()
                raise
            
            # Check for RPC error
            if isinstance(result, dict) and result.get('error') is not None:
                error = result['error']
                raise SolanaRPCError(
                    error.get('message', 'Unknown error'),
                    error.get('code', -32603),
                    method,
                    error.get('data')
                )
            
            response.raise_for_status()
                
            return result['result']
            
        except httpx.TimeoutException as e:
            raise NodeConnectionError(
                f"Request timed out after {self.timeout} seconds", method=method
            ) from e
        except httpx.ConnectError as e:
            raise NodeConnectionError(
                f"Failed to connect to ledger node at {self.url}", method=method
            ) from e
        except httpx.HTTPStatusError as e:
            raise NodeConnectionError(
                f"HTTP error occurred: {str(e)}", method=method
            ) from e
        except httpx.HTTPError as e:
            raise NodeConnectionError(
                f"Request failed: {str(e)}", method=method
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise NodeConnectionError(
                f"Invalid response format: {str(e)}", method=method
            ) from e
    
    # Account methods
    getAccountInfo = RPCMethod('getAccountInfo')
    getMultipleAccounts = RPCMethod('getMultipleAccounts')
    getBalance = RPCMethod('getBalance')
    getProgramAccounts = RPCMethod('getProgramAccounts')
    getTokenAccountsByOwner = RPCMethod('getTokenAccountsByOwner')
    getTokenLargestAccounts = RPCMethod('getTokenLargestAccounts')
    getMinimumBalanceForRentExemption = RPCMethod('getMinimumBalanceForRentExemption')
    
    # Transaction methods
    getLatestBlockhash = RPCMethod('getLatestBlockhash')
    sendTransaction = RPCMethod('sendTransaction')
    simulateTransaction = RPCMethod('simulateTransaction')
    getSignatureStatuses = RPCMethod('getSignatureStatuses')
    getTransaction = RPCMethod('getTransaction')
    getSignaturesForAddress = RPCMethod('getSignaturesForAddress')
    
    # Cluster methods
    getSlot = RPCMethod('getSlot')
    getVersion = RPCMethod('getVersion')
    getHealth = RPCMethod('getHealth')

__all__ = [
    'RPCError',
    'NodeConnectionError',
    'SolanaRPCError',
    'RPCMethod',
    'SolanaRPC',
]
